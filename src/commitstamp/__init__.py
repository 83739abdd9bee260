"""commitstamp — RFC 3161 trusted timestamps for git commits with long-term validation."""

__version__ = "0.1.0"
