"""Exception hierarchy for commitstamp.

Every error raised by the LTV engine derives from :class:`CommitStampError`
so callers can catch the whole family at one seam. The validator turns the
per-token failures into an invalid verdict; :class:`PreconditionError` is
the exception to that rule and always propagates.
"""


class CommitStampError(Exception):
    """Base class for all commitstamp errors."""


class PreconditionError(CommitStampError):
    """An input or output violated a length/format invariant.

    Indicates a logic or data-corruption bug. Never recovered from.
    """


class MalformedTokenError(CommitStampError):
    """A timestamp token lacks a required attribute or cannot be decoded."""


class ChainResolutionError(CommitStampError):
    """The signer's certificate chain could not be assembled."""


class UnsupportedFormatError(CommitStampError):
    """A certificate or CRL was neither PEM nor DER."""


class TrustError(CommitStampError):
    """A chain does not terminate in a locally trusted anchor."""


class RevocationFetchError(CommitStampError):
    """Revocation data for a chain member could not be obtained."""


class ValidationError(CommitStampError):
    """A certificate or token failed validation at the signing time."""


class TransportError(CommitStampError):
    """An HTTP exchange with a TSA, AIA or CRL endpoint failed."""


class RepositoryError(CommitStampError):
    """A git command failed or returned unexpected output."""


class CacheCorruptionError(CommitStampError):
    """A shared cache entry is empty or cannot be decoded."""
