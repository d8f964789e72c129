"""Exception hierarchy shared by the price service and the price pusher."""


class RelayError(Exception):
    """Base exception for relay errors."""

    pass


class IngestionError(RelayError):
    """Raised when an attestation cannot be parsed into a PriceUpdate."""

    pass


class SourceDisconnect(RelayError):
    """Raised when the attestation stream drops."""

    pass


class ConfigError(RelayError):
    """Raised when startup configuration is invalid or unreachable."""

    pass


class NotReadyError(RelayError):
    """Raised by read paths while the readiness gate is still closed."""

    pass


class SubmissionError(RelayError):
    """Raised when a chain adapter fails to submit a batch.

    :ivar chain: Name of the chain the submission targeted.
    """

    def __init__(self, chain: str, message: str):
        """Initialize the submission error.

        :param chain: Chain name.
        :param message: Error message from the adapter.
        """
        self.chain = chain
        super().__init__(f"[{chain}] {message}")
