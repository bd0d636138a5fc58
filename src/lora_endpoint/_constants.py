"""Internal constants shared across the package."""

DEFAULT_CONFIG_PATH = "/usr/local/etc/lora-endpoint.json"
DEFAULT_DB_PATH = "/var/local/lora-endpoint/state.db"

ENV_PREFIX = "LORA_"

#: Seconds to wait after a failed drain before trying again.
RETRY_DELAY_SECONDS: float = 5.0

#: Seconds between two reads of a watched credential file.
WATCH_INTERVAL_SECONDS: float = 1.0

DEFAULT_HTTP_PORT = 80
DEFAULT_HTTPS_PORT = 443

MQTT_DEFAULT_PORT = 1883
MQTT_DEFAULT_TLS_PORT = 8883
MQTT_TOPIC_TEMPLATE = "LoRa/{eui}/message"
MQTT_PUBLISH_TIMEOUT_SECONDS: float = 30.0
