#!/usr/bin/env python3
"""
Derive a job's escrow account address.

The escrow address is a program-derived address over
["escrow", payer wallet, sha256(job id)], so anyone can compute it offline
and compare it with what a wallet reports after funding.

Run:
  python scripts/derive_escrow.py <payer_wallet> <job_id> [--program-id ID] [--cluster devnet]
"""

import argparse
import sys

from app.errors import InvalidInput
from app.services.derivation import derive_escrow_address, hash_job_id, program_id_from_string
from app.config import settings

BOLD = "\033[1m"
DIM = "\033[2m"
GREEN = "\033[92m"
RED = "\033[91m"
RESET = "\033[0m"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("payer_wallet", help="base58 wallet address of the payer")
    parser.add_argument("job_id", help="job identifier (at most 50 UTF-8 bytes)")
    parser.add_argument("--program-id", default=settings.escrow_program_id)
    parser.add_argument("--cluster", default=settings.solana_network)
    args = parser.parse_args(argv)

    try:
        program_id = program_id_from_string(args.program_id)
        address, bump = derive_escrow_address(args.payer_wallet, args.job_id, program_id)
    except InvalidInput as exc:
        print(f"{RED}error{RESET}: {exc.detail}", file=sys.stderr)
        return 1

    print(f"{BOLD}escrow{RESET}   {GREEN}{address}{RESET}")
    print(f"{BOLD}bump{RESET}     {bump}")
    print(f"{DIM}job hash {hash_job_id(args.job_id).hex()}{RESET}")
    print(f"{DIM}explorer https://explorer.solana.com/address/{address}?cluster={args.cluster}{RESET}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
