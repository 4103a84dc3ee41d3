"""Internal constants shared across the library."""

EARTH_RADIUS_M = 6_371_000.0

#: Multiply m/s by this to get km/h.
MS_TO_KMH = 3.6

# ------------------------------------------------------------------
# Service area (Bangladesh bounding box)
# ------------------------------------------------------------------

DEFAULT_MIN_LAT = 20.670883
DEFAULT_MAX_LAT = 26.446526
DEFAULT_MIN_LNG = 88.084422
DEFAULT_MAX_LNG = 92.674797

#: Coordinates this close to zero are treated as a device sentinel (null island).
NULL_ISLAND_EPSILON = 0.001

# ------------------------------------------------------------------
# Trust scores
# ------------------------------------------------------------------

NEUTRAL_TRUST = 0.5

# ------------------------------------------------------------------
# Trip summaries
# ------------------------------------------------------------------

#: Consecutive pings further apart than this are GPS jumps, not travel.
MAX_SEGMENT_JUMP_M = 2000.0

DEFAULT_MQTT_TOPIC_PREFIX = "busfusion/bus"
USER_AGENT = "busfusion/0.4"
