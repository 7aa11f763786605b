# core/limits.py - SINGLE SOURCE OF TRUTH for timeouts, intervals, thresholds
"""
All numeric limits, timeouts, and thresholds MUST be defined here.
No other module may define these values.
"""


class Limits:
    """Operational limits and thresholds."""

    # ==========================================================================
    # Timeouts (seconds)
    # ==========================================================================

    # losetup attach/detach
    LOSETUP_TIMEOUT = 15

    # cryptsetup status / isLuks / luksDump (read-only queries)
    CRYPTSETUP_QUERY_TIMEOUT = 15

    # cryptsetup luksFormat (PBKDF benchmarking makes this slow)
    CRYPTSETUP_FORMAT_TIMEOUT = 300

    # cryptsetup open with a FIDO2 token: includes waiting for the user to touch the key
    CRYPTSETUP_OPEN_TIMEOUT = 120

    # cryptsetup close / luksKillSlot
    CRYPTSETUP_CLOSE_TIMEOUT = 30

    # systemd-cryptenroll: includes PIN entry and touch on the token
    ENROLL_TIMEOUT = 180

    # mkfs.* on a freshly opened mapping
    MKFS_TIMEOUT = 300

    # mount / umount
    MOUNT_TIMEOUT = 60

    # udevadm info / dmsetup ls / notify-send
    QUICK_QUERY_TIMEOUT = 10

    # Operator prompts (0 = wait forever)
    PROMPT_TIMEOUT_DEFAULT = 120

    # Polling for an inserted security key
    TOKEN_POLL_TIMEOUT_DEFAULT = 30
    TOKEN_POLL_INTERVAL = 0.5

    # ==========================================================================
    # Size limits
    # ==========================================================================

    MIN_VOLUME_SIZE_MB = 32  # LUKS2 header alone takes 16 MiB
    MAX_VOLUME_SIZE_MB = 16 * 1024 * 1024  # 16 TiB

    BYTES_PER_MB = 1024 * 1024

    # Maximum log file size before rotation (bytes)
    MAX_LOG_FILE_SIZE = 5 * 1024 * 1024  # 5 MB
    LOG_BACKUP_COUNT = 3

    # ==========================================================================
    # Key material
    # ==========================================================================

    BOOTSTRAP_KEY_BYTES = 64

    MIN_TOKEN_COUNT = 1
    MAX_TOKEN_COUNT = 31  # LUKS2 has 32 keyslots; one is held by the bootstrap key
