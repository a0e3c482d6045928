"""Domain exceptions for the secure-voting engine."""


class SecurePollsError(Exception):
    """Base exception for all application-specific exceptions."""

    pass


class ValidationError(SecurePollsError):
    """Raised for malformed input (missing ids, too few options, ...)."""

    pass


class NotFoundError(SecurePollsError):
    """Raised when a referenced poll, option or link does not exist."""

    pass


class StoreError(SecurePollsError):
    """Raised when a store transaction fails and has been rolled back."""

    pass


class CryptoError(SecurePollsError):
    """
    Raised by BallotCrypto.open_ballot when a ballot cannot be opened.

    decrypt_ballot turns it into None, so audits count the ballot as
    undecryptable instead of failing.
    """

    pass


class ConfigurationError(SecurePollsError):
    """Raised at startup when a required secret or setting is missing."""

    pass
