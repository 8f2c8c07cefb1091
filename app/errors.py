"""Typed domain errors for escrow settlement.

Services raise these; the FastAPI handler in app.main renders them as
``{"detail": ..., "code": ...}`` with the class's status code.
"""


class EscrowError(Exception):
    """Base class for every domain failure surfaced to callers."""

    status_code: int = 400
    code: str = "escrow_error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.__class__.__doc__ or self.code
        super().__init__(self.detail)


class InvalidInput(EscrowError):
    """Invalid input."""

    status_code = 422
    code = "invalid_input"


class InsufficientBalance(EscrowError):
    """Insufficient balance."""

    status_code = 422
    code = "insufficient_balance"


class SignerUnavailable(EscrowError):
    """No authorized signer is attached."""

    status_code = 400
    code = "signer_unavailable"


class SignerDeclined(SignerUnavailable):
    """The signer declined to authorize the transaction."""

    code = "signer_declined"


class AccessDenied(EscrowError):
    """Not allowed for this wallet."""

    status_code = 403
    code = "access_denied"


class ResourceNotFound(EscrowError):
    """Resource not found."""

    status_code = 404
    code = "not_found"


class EscrowNotFound(ResourceNotFound):
    """Escrow account not found on the ledger."""

    code = "escrow_not_found"


class InvalidState(EscrowError):
    """Operation not allowed in the current state."""

    status_code = 409
    code = "invalid_state"


class MilestoneAlreadyApproved(InvalidState):
    """Milestone already approved."""

    code = "milestone_already_approved"


class MilestoneNotApproved(InvalidState):
    """Milestone not approved yet."""

    code = "milestone_not_approved"


class MilestoneAlreadyClaimed(InvalidState):
    """Milestone already claimed."""

    code = "milestone_already_claimed"


class CannotCancelAfterApproval(InvalidState):
    """Cannot cancel once a milestone has been approved."""

    code = "cannot_cancel_after_approval"


class UnconfirmedLedgerOperation(EscrowError):
    """Ledger transaction is not confirmed."""

    status_code = 400
    code = "unconfirmed_ledger_operation"


class LedgerRejected(EscrowError):
    """The settlement program rejected the transaction."""

    status_code = 400
    code = "ledger_rejected"


class LedgerUnreachable(EscrowError):
    """Ledger RPC is unreachable."""

    status_code = 503
    code = "ledger_unreachable"


# Anchor custom program errors start at 6000, in declaration order.
PROGRAM_ERRORS: dict[int, type[EscrowError]] = {
    6000: InvalidInput,  # JobIdTooLong
    6001: InvalidInput,  # InvalidMilestoneAmount
    6002: InvalidInput,  # InvalidMilestoneIndex
    6003: MilestoneAlreadyApproved,
    6004: MilestoneNotApproved,
    6005: MilestoneAlreadyClaimed,
    6006: CannotCancelAfterApproval,
    6007: InsufficientBalance,  # InsufficientEscrowBalance
    6008: AccessDenied,  # UnauthorizedPlatformAccess
}
