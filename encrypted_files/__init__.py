"""Lifecycle manager for LUKS2-encrypted container files unlocked with FIDO2 security keys."""

from encrypted_files.core.version import VERSION

__version__ = VERSION
