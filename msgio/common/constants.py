"""Constants for msgio."""

import stat

# fstat mode bit for FIFOs (octal 0010000 in stat.h)
FSTAT_MODE_S_IFIFO = stat.S_IFIFO

# Open-mode prefixes, matched against the normalized mode string
READABLE_MODES = ("r", "r+", "w+", "a+", "x+", "c+")
WRITABLE_MODES = ("r+", "w", "w+", "a", "a+", "x", "x+", "c", "c+")

# Marks a stream-style move destination (scheme://...)
SCHEME_SEPARATOR = "://"

# Hosts accepted in file:// URLs
LOCAL_FILE_HOSTS = ("", "localhost")

# Copy buffer for stream-style moves: 1MB
DEFAULT_COPY_CHUNK_SIZE = 1024 * 1024

# Default per-file upload limit: 2MB
DEFAULT_UPLOAD_MAX_FILESIZE = 2 * 1024 * 1024

# Max files accepted in a single request
DEFAULT_MAX_FILE_UPLOADS = 20

# Environ key holding an already-normalized uploaded file tree
NORMALIZED_FILES_KEY = "msgio.files"

# Environ key receiving the form fields read alongside ingested uploads
NORMALIZED_FORM_KEY = "msgio.form"

# Environ key listing the temporary files one request's ingestion registered
UPLOAD_TMP_NAMES_KEY = "msgio.upload_tmp_names"

# Form field a client may send to cap file sizes
MAX_FILE_SIZE_FIELD = "MAX_FILE_SIZE"

# Prefix of temporary files created while ingesting uploads
UPLOAD_TMP_PREFIX = "msgio"

# Keys of a raw upload leaf
RAW_UPLOAD_KEYS = ("name", "type", "tmp_name", "error", "size")


class MetaKeys:
    MODE = "mode"
    SEEKABLE = "seekable"
    URI = "uri"
    BLOCKED = "blocked"
    STREAM_TYPE = "stream_type"
    FILENO = "fileno"
    EOF = "eof"


class StreamTypes:
    FILE = "file"
    PIPE = "pipe"
    SOCKET = "socket"
    OTHER = "other"
