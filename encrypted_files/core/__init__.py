# encrypted_files SSOT core modules
# This package contains all single-source-of-truth modules: names, limits,
# errors, configuration, and the subprocess boundary.
from .errors import EncryptedFilesError
from .version import VERSION

__all__ = [
    "VERSION",
    "EncryptedFilesError",
]
