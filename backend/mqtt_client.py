"""MQTT Client for the Door Access Edge Service.

Talks to the relay/input controller (Shelly Pro 3) over its MQTT RPC channel:
- switches relay outputs (Switch.Set)
- receives input changes (NotifyStatus on the events topic)
- resyncs all inputs on connect (Shelly.GetStatus)
"""

import asyncio
import itertools
import json
import logging
import ssl
import time
from typing import Any, Awaitable, Callable, Optional, Protocol

import paho.mqtt.client as mqtt

from config import get_config

logger = logging.getLogger(__name__)

InputHandler = Callable[[list[dict[str, Any]]], Awaitable[Any]]


class OutputController(Protocol):
    """Switches relay output channels. Must not raise."""

    async def set_output(self, channel: int, on: bool) -> bool:
        ...


def parse_input_states(params: dict[str, Any]) -> list[dict[str, Any]]:
    """Extract input events from a NotifyStatus params / GetStatus result.

    Entries look like ``"input:1": {"id": 1, "state": false}``. Components
    other than inputs, and inputs without a state, are skipped.

    Returns:
        List of ``{"id": int, "state": bool}`` events in input order.
    """
    events: list[dict[str, Any]] = []
    for key, value in params.items():
        if not key.startswith("input:") or not isinstance(value, dict):
            continue
        if value.get("state") is None:
            continue
        input_id = value.get("id", key.split(":", 1)[1])
        events.append({"id": input_id, "state": value["state"]})
    return events


class MqttClient:
    """MQTT client for relay controller communication."""

    def __init__(self) -> None:
        """Initialize MQTT client."""
        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._last_seen: float = 0
        self._request_ids = itertools.count(1)
        self._input_handler: Optional[InputHandler] = None

    @property
    def is_connected(self) -> bool:
        """Check if client is connected to broker."""
        return self._connected

    @property
    def last_seen_seconds(self) -> Optional[int]:
        """Get seconds since the relay controller last sent anything."""
        if self._last_seen == 0:
            return None
        return int(time.time() - self._last_seen)

    def set_input_handler(self, handler: InputHandler) -> None:
        """Register the coroutine that receives input event batches."""
        self._input_handler = handler

    def _get_topic(self, template: str) -> str:
        """Resolve topic template with device_id."""
        config = get_config()
        return template.replace("{device_id}", config.relay.device_id)

    @property
    def _response_topic(self) -> str:
        return f"{get_config().relay.rpc_source}/rpc"

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: mqtt.ConnectFlags,
        reason_code: mqtt.ReasonCode,
        properties: Optional[mqtt.Properties] = None,
    ) -> None:
        """Handle MQTT connection established."""
        if reason_code.value == 0:
            self._connected = True
            logger.info("MQTT connected to broker")

            config = get_config()
            topic_events = self._get_topic(config.relay.topic_events)
            client.subscribe(topic_events, qos=1)
            logger.info(f"[SUB] Subscribed to: {topic_events}")

            client.subscribe(self._response_topic, qos=1)
            logger.info(f"[SUB] Subscribed to: {self._response_topic}")

            if self._loop:
                asyncio.run_coroutine_threadsafe(self._on_connected(), self._loop)
        else:
            logger.error(f"MQTT connection failed: {reason_code}")

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: mqtt.DisconnectFlags,
        reason_code: mqtt.ReasonCode,
        properties: Optional[mqtt.Properties] = None,
    ) -> None:
        """Handle MQTT disconnection."""
        self._connected = False
        logger.warning(f"MQTT disconnected: {reason_code}")

    def _on_message(
        self,
        client: mqtt.Client,
        userdata: Any,
        message: mqtt.MQTTMessage,
    ) -> None:
        """Handle incoming MQTT message (paho network thread)."""
        logger.debug(f"[MSG-IN] topic={message.topic}, size={len(message.payload)} bytes")
        try:
            payload = json.loads(message.payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"Invalid JSON in MQTT message: {e}")
            return

        if not isinstance(payload, dict):
            logger.warning(f"Ignoring non-object MQTT payload on {message.topic}")
            return

        self._last_seen = time.time()
        if self._loop:
            asyncio.run_coroutine_threadsafe(self._dispatch_message(message.topic, payload), self._loop)

    async def _dispatch_message(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            if topic == self._response_topic:
                await self._handle_rpc_response(payload)
            elif payload.get("method") == "NotifyStatus":
                await self._handle_notify_status(payload)
        except Exception as e:
            logger.error(f"Error handling MQTT message on {topic}: {e}", exc_info=True)

    async def _handle_notify_status(self, payload: dict[str, Any]) -> None:
        """Forward input changes from a NotifyStatus notification."""
        params = payload.get("params")
        if not isinstance(params, dict):
            return
        events = parse_input_states(params)
        if events:
            await self._forward_inputs(events)

    async def _handle_rpc_response(self, payload: dict[str, Any]) -> None:
        """Handle a reply to one of our RPC requests."""
        if "error" in payload:
            logger.error(f"Relay RPC {payload.get('id')} failed: {payload['error']}")
            return
        result = payload.get("result")
        if isinstance(result, dict):
            events = parse_input_states(result)
            if events:
                logger.info(f"Input resync from relay status: {events}")
                await self._forward_inputs(events)

    async def _forward_inputs(self, events: list[dict[str, Any]]) -> None:
        if self._input_handler is None:
            logger.warning("Input events received but no handler registered")
            return
        await self._input_handler(events)

    async def _on_connected(self) -> None:
        """Reset outputs and resync inputs after (re)connect."""
        await self.all_outputs_off()
        await self.request_input_status()

    def _publish_rpc(self, method: str, params: Optional[dict[str, Any]] = None) -> bool:
        if not self._client or not self._connected:
            logger.warning(f"Cannot send {method}: MQTT not connected")
            return False

        config = get_config()
        topic = self._get_topic(config.relay.topic_rpc)
        request: dict[str, Any] = {
            "id": next(self._request_ids),
            "src": config.relay.rpc_source,
            "method": method,
        }
        if params is not None:
            request["params"] = params

        payload = json.dumps(request)
        logger.debug(f"[PUB] topic={topic}, qos=1, payload={payload}")
        info = self._client.publish(topic, payload, qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error(f"[PUB] {method} publish failed: rc={info.rc}")
            return False
        return True

    async def set_output(self, channel: int, on: bool) -> bool:
        """Switch a relay output.

        Args:
            channel: Output channel id.
            on: True to energize.

        Returns:
            True if the command was handed to the broker.
        """
        ok = self._publish_rpc("Switch.Set", {"id": channel, "on": on})
        if ok:
            logger.info(f"[PUB] Output {channel} -> {'on' if on else 'off'}")
        return ok

    async def all_outputs_off(self) -> None:
        """Switch every configured output off."""
        for channel in get_config().relay.off_channels:
            await self.set_output(channel, False)

    async def request_input_status(self) -> None:
        """Ask the relay controller for its full status; inputs are applied on reply."""
        self._publish_rpc("Shelly.GetStatus")

    async def ping(self) -> bool:
        """Ask the relay controller for its device info; any reply refreshes last_seen."""
        return self._publish_rpc("Shelly.GetDeviceInfo")

    def connect(self, loop: asyncio.AbstractEventLoop) -> None:
        """Connect to MQTT broker.

        Args:
            loop: Asyncio event loop for coroutine scheduling.
        """
        config = get_config()
        self._loop = loop

        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            protocol=mqtt.MQTTv5,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        if config.mqtt.username:
            self._client.username_pw_set(config.mqtt.username, config.mqtt.password)

        if config.mqtt.use_tls:
            import certifi
            self._client.tls_set(ca_certs=certifi.where(), tls_version=ssl.PROTOCOL_TLS_CLIENT)
            logger.info("TLS enabled for MQTT connection")

        logger.info(f"Connecting to MQTT broker at {config.mqtt.host}:{config.mqtt.port}")

        try:
            self._client.connect_async(config.mqtt.host, config.mqtt.port)
            self._client.loop_start()
        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")

    def disconnect(self) -> None:
        """Disconnect from MQTT broker."""
        if self._client:
            self._client.loop_stop()
            self._client.disconnect()
            self._connected = False
            logger.info("MQTT client disconnected")


# Global MQTT client instance
_mqtt_client: Optional[MqttClient] = None


def get_mqtt_client() -> MqttClient:
    """Get MQTT client instance (singleton)."""
    global _mqtt_client
    if _mqtt_client is None:
        _mqtt_client = MqttClient()
    return _mqtt_client
