"""Exception taxonomy shared by the session, pipeline and HTTP layers."""

from __future__ import annotations


class BridgeError(RuntimeError):
    """Base for failures the bridge reports or recovers from."""

    status_code = 500


class ConnectionFailure(BridgeError):
    """The session engine could not start a session."""

    status_code = 503


class HealthCheckFailure(BridgeError):
    """The periodic probe found the session disconnected or could not reach it."""

    status_code = 503


class NotConnected(BridgeError):
    status_code = 503


class InvalidRequest(BridgeError):
    status_code = 400


class UnsupportedMediaType(BridgeError):
    status_code = 415


class MediaProcessingFailure(BridgeError):
    """Decrypting or persisting inbound media failed."""


class ForwardingFailure(BridgeError):
    """Webhook delivery failed."""

    status_code = 502


class DeliveryFailure(BridgeError):
    """The engine rejected, failed or timed out on an outbound send."""

    status_code = 502
