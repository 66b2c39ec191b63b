# Stream header magic and version (first bytes of the decrypted stream)
STREAM_MAGIC = b"CAPSULE\x00"  # 8 bytes: "CAPSULE\0"

VERSION_MAJOR = 1
VERSION_MINOR = 0


# Record constants
REC_SYNC = bytes([0xC4, 0x50, 0x53, 0x4C])  # 0xC4 'P' 'S' 'L'

RTYPE_ENTRY_BEGIN = 0
RTYPE_CHUNK = 1
RTYPE_ENTRY_END = 2
RTYPE_ARCHIVE_END = 3

# Record flags
RFLAG_HEADER_EXT = 1 << 0


# Entry kinds
KIND_RECORD_COLLECTION = 0
KIND_BLOB = 1


# Key derivation (PBKDF2-HMAC-SHA256). The salt is shared by every backup;
# see DESIGN.md before changing any of these, old backups stop decrypting.
KDF_SALT = b"CapsuleBackupSalt"
KDF_ITERATIONS = 65536
KEY_SIZE = 32  # AES-256

# AES-GCM framing
NONCE_SIZE = 12
TAG_SIZE = 16


IO_BUFFER_SIZE = 8192  # 8 KiB copy buffer

# Reader safety bounds
MAX_NAME_BYTES = 1024
MAX_CHUNK_PAYLOAD = 1_048_576  # 1 MiB
MAX_COLLECTION_BYTES = 64 * 1024 * 1024  # collections are buffered in memory


# Archive entry naming
COLLECTION_SUFFIX = ".json"
BLOB_PREFIX = "files/"


GENERIC_AUTH_MESSAGE = "Wrong password or corrupted backup."
