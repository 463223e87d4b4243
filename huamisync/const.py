# ======================
# GATT layout
# ======================

HUAMI_SERVICE_UUID = "0000fee0-0000-1000-8000-00805f9b34fb"
HUAMI_UUID_FMT = "{short:08x}-0000-3512-2118-0009af100700"

CHAR_AUTH = 0x0009
CHAR_FETCH_CONTROL = 0x0004
CHAR_FETCH_DATA = 0x0005
# Some firmwares only expose the generic control characteristic
CHAR_CONTROL_FALLBACK = 0x0001

TIME_SERVICE_UUID = "00001805-0000-1000-8000-00805f9b34fb"
CHAR_TIME_UUID = "00002a2b-0000-1000-8000-00805f9b34fb"

# ======================
# Auth handshake
# ======================

AUTH_KEY_HEX_LENGTH = 32
AUTH_NONCE_LENGTH = 16

AUTH_RESPONSE = 0x10
AUTH_OP_SEND_KEY = 0x01
AUTH_OP_REQUEST_RANDOM = 0x02
AUTH_OP_SEND_ENCRYPTED = 0x03
AUTH_STATUS_SUCCESS = 0x01
AUTH_STATUS_FAIL = 0x04

AUTH_REQUEST_RANDOM = bytes([AUTH_OP_REQUEST_RANDOM, 0x00])
AUTH_ENCRYPTED_PREFIX = bytes([AUTH_OP_SEND_ENCRYPTED, 0x00])

AUTH_TIMEOUT_SECONDS = 10.0

# ======================
# Activity fetch
# ======================

FETCH_RESPONSE = 0x10
FETCH_OP_START_DATE = 0x01
FETCH_OP_TRANSFER = 0x02
FETCH_STATUS_SUCCESS = 0x01
FETCH_STATUS_REJECTED = 0x02

ACTIVITY_CLASS_HISTORY = 0x01
ACTIVITY_CLASS_SPORTS_DETAILS = 0x06
ACTIVITY_CLASS_AUTHORIZE = 0x10

# 2020-01-01 00:00, the earliest sports track the firmware keeps
DEFAULT_FETCH_START = (2020, 1, 1, 0, 0)
SECONDARY_FETCH_COMMAND = bytes(
    [0x01, ACTIVITY_CLASS_SPORTS_DETAILS, 0xE4, 0x07, 0x02, 0x15, 0x0A, 0x00, 0x00, 0x00]
)
EMERGENCY_FETCH_COMMAND = bytes([0x01, ACTIVITY_CLASS_AUTHORIZE]) + bytes(8)

CMD_START_TRANSFER = bytes([0x02])
CMD_KEEPALIVE_ACK = bytes([0x02])
CMD_END_ACK = 0x03
END_ACK_RETAIN = 0x09
END_ACK_DELETE = 0x01

PHASE1_DEADLINE_SECONDS = 10.0
PHASE2_DEADLINE_SECONDS = 12.0
PHASE3_DEADLINE_SECONDS = 10.0
START_TRANSFER_SETTLE_SECONDS = 0.25
REJECT_COOLDOWN_SECONDS = 2.0
INACTIVITY_TIMEOUT_SECONDS = 5.0
PROGRESS_INTERVAL_SECONDS = 0.3
ACK_EVERY_BYTES = 2048

# ======================
# Command delivery
# ======================

WRITE_ATTEMPTS = 5
WRITE_SETTLE_SECONDS = 0.2
WRITE_BACKOFF_BASE_SECONDS = 0.3
WRITE_BACKOFF_FACTOR = 2.0
WRITE_BACKOFF_MAX_SECONDS = 4.8

# ======================
# Telemetry
# ======================

COORDINATE_SCALE = 3_000_000.0
EARTH_RADIUS_KM = 6371.0
CALORIES_PER_KM = 60
HEART_RATE_NO_READING = (0, 255)
HEART_RATE_ATTACH_SECONDS = 5.0
DURATION_PLACEHOLDER = "--:--:--"

FIXED_RECORD_SIZE = 8
FIXED_RECORD_MAX_TYPE = 8

# Timestamp marks outside these years are corrupt
TIMESTAMP_MIN_YEAR = 2000
TIMESTAMP_MAX_YEAR = 2100

# Below this share of bytes in accepted records a TLV walk is not trusted
TLV_MIN_CONSUMED_RATIO = 0.5

# ======================
# Export
# ======================

GPX_CREATOR = "huamisync"
GPX_TRACK_NAME = "Amazfit activity"
GPXTPX_NAMESPACE = "http://www.garmin.com/xmlschemas/TrackPointExtension/v1"

# ======================
# Time sync
# ======================

TIME_SYNC_CONNECT_GRACE_SECONDS = 1.0  # let notifications settle
TIME_SYNC_TIMEOUT_SECONDS = 5.0

# ======================
# Connection
# ======================

CONNECT_MAX_ATTEMPTS = 3
