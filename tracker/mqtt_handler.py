# tracker/mqtt_handler.py
import json, time, logging

import paho.mqtt.client as mqtt
from pydantic import ValidationError

from .errors import TrackerError
from .schemas import CommandAck, HeartbeatReport, LocationReport
from .service import TrackerService
from .settings import Settings

log = logging.getLogger("mqtt")

def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return -1

def handle_message(service: TrackerService, topic_base: str, topic: str, raw: bytes) -> tuple[str, str] | None:
    """Route one device report to the service.

    Topics are ``{base}/{device_id}/{location|heartbeat|ack}``. Returns the
    ``(topic, payload)`` to publish back, if any: heartbeats are answered on
    ``{base}/{device_id}/commands`` with the pending command queue.
    """
    prefix = f"{topic_base}/"
    if not topic.startswith(prefix):
        return None
    parts = topic[len(prefix):].split("/")
    if len(parts) != 2:
        return None
    device_id, suffix = parts
    payload = json.loads(raw.decode("utf-8")) if raw else {}
    if not isinstance(payload, dict):
        raise ValueError("payload must be a JSON object")

    if suffix == "location":
        service.record_location(device_id, LocationReport.model_validate(payload))
        return None
    if suffix == "heartbeat":
        reply = service.heartbeat(device_id, HeartbeatReport.model_validate(payload))
        return f"{prefix}{device_id}/commands", reply.model_dump_json(by_alias=True)
    if suffix == "ack":
        item_id = payload.get("id") or payload.get("commandId")
        if not item_id:
            raise ValueError("ack payload needs an id")
        service.acknowledge(device_id, str(item_id), CommandAck.model_validate(payload).status)
        return None
    return None

def start_mqtt(service: TrackerService, settings: Settings):
    client = mqtt.Client(
        client_id=f"tracker-ingest-{int(time.time())}",
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,  # paho 2.x
    )
    client.enable_logger(log)

    if settings.mqtt_username and settings.mqtt_password:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)

    client.reconnect_delay_set(min_delay=1, max_delay=30)

    stats = {"rx_total": 0, "rx_rejected": 0}

    def on_connect(client, userdata, flags, reason_code, properties):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            log.warning("Connect failed rc=%s (5=Not authorized). Retrying…", rc)
            return
        topic = f"{settings.mqtt_topic_base}/+/+"
        res, mid = client.subscribe(topic, qos=1)
        log.info("Connected. SUB %s res=%s mid=%s", topic, res, mid)

    def on_subscribe(client, userdata, mid, reason_codes, properties):
        if any(_rc_int(rc) >= 0x80 for rc in reason_codes):
            log.warning("Subscription rejected by broker ACL (mid=%s)", mid)

    def on_disconnect(client, userdata, disconnect_flags, reason_code, properties):
        log.warning("Disconnected rc=%s. Reconnecting…", _rc_int(reason_code))

    def on_message(client, userdata, msg):
        stats["rx_total"] += 1
        try:
            reply = handle_message(service, settings.mqtt_topic_base, msg.topic, msg.payload)
        except (TrackerError, ValidationError, ValueError) as e:
            # json.JSONDecodeError is a ValueError
            stats["rx_rejected"] += 1
            log.warning("Rejected message on %s: %s", msg.topic, e)
            return
        if reply is not None:
            client.publish(reply[0], reply[1], qos=1, retain=False)
        if stats["rx_total"] % 100 == 1:
            log.info("msg counts: total=%s rejected=%s", stats["rx_total"], stats["rx_rejected"])

    client.on_connect = on_connect
    client.on_subscribe = on_subscribe
    client.on_disconnect = on_disconnect
    client.on_message = on_message

    log.info(
        "Bootstrapping host=%s port=%s user=%s base=%s",
        settings.mqtt_host,
        settings.mqtt_port,
        "<set>" if settings.mqtt_username else "<none>",
        settings.mqtt_topic_base,
    )

    client.connect(settings.mqtt_host, settings.mqtt_port, keepalive=30)
    client.loop_start()
    return client
