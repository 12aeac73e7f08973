# hypercorn_core/constants.py

PROTOCOL = "hypercorn"
HYPERCORN_VERSION = 1

FEED_DIR = "hypercore"
TRUST_DIR = "trust"
TRUST_DB = "trust.db"
KEY_FILE = "key.json"
FEED_DB = "log.db"

DEFAULT_EXPIRATION = 3600 * 24 * 365  # 1 year

TRUST_TOPIC = "hypercorn.trust"
FEED_TOPIC_PREFIX = "feed."