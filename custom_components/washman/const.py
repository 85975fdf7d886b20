DOMAIN = "washman"
VERSION = "0.3.0"

ORDER_STATUSES = [
    "pending",
    "confirmed",
    "assigned",
    "on_the_way",
    "arrived",
    "in_progress",
    "completed",
    "cancelled",
]

# Config entry keys
CONF_ENTRY_NAME = "entry_name"
CONF_SUPABASE_URL = "supabase_url"
CONF_SUPABASE_KEY = "supabase_key"
CONF_EMAIL = "email"
CONF_PASSWORD = "password"
CONF_ORDER_ID = "order_id"
CONF_WASHER_ID = "washer_id"
CONF_DESTINATION_LATITUDE = "destination_latitude"
CONF_DESTINATION_LONGITUDE = "destination_longitude"
CONF_INTERPOLATE = "interpolate"
CONF_AVERAGE_SPEED = "average_speed"

# Realtime topics and tables
LOCATION_TOPIC = "washer-location:{order_id}"
ORDER_TOPIC = "order:{order_id}"
LOCATION_EVENT = "location"
ORDERS_TABLE = "orders"
MESSAGES_TABLE = "messages"

# Geo / ETA
EARTH_RADIUS_M = 6_371_000.0
DEFAULT_AVERAGE_SPEED_KMH = 30.0

# Interpolation
INTERPOLATION_DURATION = 1.0   # seconds from one raw sample to the next
FRAME_INTERVAL = 0.05          # seconds between interpolation frames (~20 fps)
FRAME_PUSH_INTERVAL = 0.25     # min seconds between mid-animation entity updates

# Seconds to wait for a subscription acknowledgment before giving up
SUBSCRIBE_TIMEOUT = 10.0

# Home Assistant caps state strings at 255 characters
MAX_STATE_LENGTH = 255
