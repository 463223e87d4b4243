# ======================
# HA constants
# ======================

DOMAIN = "amazfit_activity"

PLATFORMS = ["sensor"]

CONF_ADDRESS = "address"
CONF_AUTH_KEY = "auth_key"
CONF_DEVICE_NAME = "device_name"
CONF_RETAIN_ON_DEVICE = "retain_on_device"

DEFAULT_RETAIN_ON_DEVICE = True

EVENT_ACTIVITY_FETCHED = f"{DOMAIN}_activity_fetched"
EVENT_FETCH_PROGRESS = f"{DOMAIN}_fetch_progress"

SERVICE_FETCH_ACTIVITIES = "fetch_activities"
