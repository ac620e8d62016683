"""Internal constants shared across the library."""

BROKER_URL = "ws://localhost:8080/ws/websocket"
OUTBOUND_DESTINATION = "/app/update-location"
INBOUND_TOPIC = "/topic/locations"

STOMP_ACCEPT_VERSION = "1.2,1.1"
STOMP_SUBPROTOCOLS: tuple[str, ...] = ("v12.stomp", "v11.stomp")
JSON_CONTENT_TYPE = "application/json;charset=UTF-8"

MQTT_DEFAULT_PORT = 1883

TRANSPORT_STOMP = "stomp"
TRANSPORT_MQTT = "mqtt"
TRANSPORTS: frozenset[str] = frozenset({TRANSPORT_STOMP, TRANSPORT_MQTT})

# Files holding an installation-scoped id on systemd/dbus hosts.
MACHINE_ID_PATHS: tuple[str, ...] = ("/etc/machine-id", "/var/lib/dbus/machine-id")
