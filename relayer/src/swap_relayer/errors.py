class RelayerError(Exception):
    """Base class for every error raised by the relayer."""


class NetworkError(RelayerError):
    """Transient RPC / explorer failure. Always retried with back-off."""


class AlreadySettled(RelayerError):
    """The escrow was already withdrawn or cancelled. Treated as success."""


class SubmissionRejected(RelayerError):
    """The chain refused the transaction (authorization, fee, contract revert)."""


class InsufficientFunds(SubmissionRejected):
    pass


class NotAuthorized(SubmissionRejected):
    pass


class InvalidSecret(RelayerError):
    def __init__(self, swap_id: str, secret: bytes):
        super().__init__(f"secret {secret.hex()[:16]}... does not match hashlock of swap {swap_id}")
        self.swap_id = swap_id
        self.secret = secret


class StorageUnavailable(RelayerError):
    """The persistence backend cannot be reached; the coordinator must halt."""


class DuplicateOrder(RelayerError):
    def __init__(self, swap_id: str):
        super().__init__(f"Order with ID {swap_id} already exists.")
        self.swap_id = swap_id
