# core/constants.py - SINGLE SOURCE OF TRUTH for all shared string literals
"""
All shared string constants MUST be defined here.
No other module may define these values.

Categories:
- ConfigKeys: JSON config keys
- Defaults: default values for every config key
- FileNames: config and log file names
- UserInputs: accepted operator confirmation strings
- CryptParams: LUKS2 / token parameters
- Commands: external binaries this tool drives
- EnvVars: environment variable names
"""


# =============================================================================
# Config keys
# =============================================================================


class ConfigKeys:
    """JSON keys in config.json."""

    SCHEMA_VERSION = "schema_version"

    # Naming and placement
    VOLUMES_DIR = "volumes_dir"
    BACKING_SUFFIX = "backing_suffix"
    MOUNT_ROOT = "mount_root"
    MAPPER_SUFFIX = "mapper_suffix"

    # Create
    TOKEN_COUNT = "token_count"
    FILESYSTEM = "filesystem"
    BOOTSTRAP_KEY_DIR = "bootstrap_key_dir"

    # Operator interaction
    PROMPT_TIMEOUT = "prompt_timeout"
    TOKEN_POLL_TIMEOUT = "token_poll_timeout"

    # Desktop notification
    NOTIFY = "notify"
    NOTIFY_ENABLED = "enabled"
    NOTIFY_USER = "user"
    NOTIFY_DISPLAY = "display"

    # Logging
    LOG_FILE = "log_file"


class Defaults:
    """Default values for config keys."""

    VOLUMES_DIR = "."
    BACKING_SUFFIX = "encrypted"
    MOUNT_ROOT = "/mnt"
    MAPPER_SUFFIX = "unencrypted"
    TOKEN_COUNT = 2
    FILESYSTEM = "ext4"
    BOOTSTRAP_KEY_DIR = "/dev/shm"
    NOTIFY_ENABLED = True
    NOTIFY_USER = None
    NOTIFY_DISPLAY = ":0"
    LOG_FILE = None


# =============================================================================
# File names
# =============================================================================


class FileNames:
    CONFIG_JSON = "config.json"
    CONFIG_DIR = "/etc/encrypted-files"
    BOOTSTRAP_KEY_PREFIX = "ef_bootstrap_"
    BOOTSTRAP_KEY_SUFFIX = ".key"


class EnvVars:
    CONFIG_PATH = "ENCRYPTED_FILES_CONFIG"


# =============================================================================
# Operator input
# =============================================================================


class UserInputs:
    """Accepted answers for confirmation prompts (compared case-insensitively)."""

    YES = ("y", "yes")


# =============================================================================
# Crypt layer
# =============================================================================


class CryptParams:
    """LUKS2 parameters and the token vocabulary found in LUKS2 metadata."""

    LUKS_TYPE = "luks2"
    CRYPT_TARGET = "crypt"

    # Token type written by systemd-cryptenroll --fido2-device
    FIDO2_TOKEN_TYPE = "systemd-fido2"

    # udev property set on hidraw nodes of FIDO security keys
    SECURITY_TOKEN_PROPERTY = "ID_SECURITY_TOKEN"

    HIDRAW_GLOB = "hidraw*"
    DEV_DIR = "/dev"
    MAPPER_DIR = "/dev/mapper"
    LOOP_PREFIX = "/dev/loop"

    # cryptsetup status exit code for an inactive mapping
    STATUS_INACTIVE_EXIT = 4


class Commands:
    """External binaries. Checked with shutil.which() before first use."""

    LOSETUP = "losetup"
    CRYPTSETUP = "cryptsetup"
    CRYPTENROLL = "systemd-cryptenroll"
    DMSETUP = "dmsetup"
    UDEVADM = "udevadm"
    BLKID = "blkid"
    MOUNT = "mount"
    UMOUNT = "umount"
    SUDO = "sudo"
    NOTIFY_SEND = "notify-send"
