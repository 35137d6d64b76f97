"""Tracks live gateways so sync events can reach every browser tab."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from termbridge.server.gateway import ConnectionGateway


class ConnectionManager:
    """Manages the set of open browser connections."""

    def __init__(self):
        self.active_connections: list[ConnectionGateway] = []

    def connect(self, gateway: ConnectionGateway) -> None:
        self.active_connections.append(gateway)

    def disconnect(self, gateway: ConnectionGateway) -> None:
        if gateway in self.active_connections:
            self.active_connections.remove(gateway)

    def broadcast(self, data: dict[str, Any]) -> int:
        """Queue a message for every connected client. Returns how many."""
        for gateway in list(self.active_connections):
            gateway.send(dict(data))
        return len(self.active_connections)

    @property
    def client_count(self) -> int:
        return len(self.active_connections)
