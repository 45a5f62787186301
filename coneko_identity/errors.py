"""
Coneko error types.

Every failure raised by this package derives from ConekoError. Expected
outcomes (a signature that does not verify, a denied intent) are returned as
values by the functions that produce them; the exceptions below are what
callers catch when a message cannot be trusted or an input is unusable.
"""


class ConekoError(Exception):
    """Error from Coneko identity operations."""
    pass


class KeyGenerationError(ConekoError):
    """Key material could not be generated (fatal, do not retry)."""
    pass


class MalformedInputError(ConekoError, ValueError):
    """Input failed validation where it was first parsed or constructed."""
    pass


class IntentError(ConekoError):
    """An intent registry rule was violated."""
    pass


class DecryptionError(ConekoError):
    """Ciphertext failed authentication or could not be decoded."""
    pass


class VerificationError(ConekoError):
    """An envelope signature did not verify against the sender's key."""
    pass


class RelayUnavailableError(ConekoError):
    """A relay lookup could not be completed."""
    pass


class StorageError(ConekoError):
    """Persisted agent data could not be read."""
    pass
