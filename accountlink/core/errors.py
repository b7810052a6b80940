class AccountLinkError(Exception):
    """Base class for engine failures surfaced to the coordinator."""


class CollaboratorError(AccountLinkError):
    """A provisioner, store or channel call failed; nothing was committed and the step is retryable."""

    def __init__(self, collaborator: str, detail: str = ""):
        self.collaborator = collaborator
        self.detail = detail
        super().__init__(f"{collaborator} failed: {detail}" if detail else f"{collaborator} failed")


class ChallengeThrottled(AccountLinkError):
    def __init__(self, retry_after_minutes: int):
        self.retry_after_minutes = int(retry_after_minutes)
        super().__init__(f"challenge issue limit reached, retry in {self.retry_after_minutes} min")


class ChallengeNotFound(AccountLinkError):
    """No challenge was ever issued for the account."""


class ProvisionalAccountNotMergeable(AccountLinkError):
    """The account that would be discarded by a LINK merge is verified."""
