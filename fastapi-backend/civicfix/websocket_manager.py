"""
WebSocket change notifications for report dashboards.

Every committed report insert or update is pushed to connected clients so
admin, agent and reporter screens can re-fetch instead of polling.
"""
import logging
from typing import Dict, List, Any, Optional
from datetime import datetime, timezone

from fastapi import WebSocket
from pydantic import BaseModel, Field

from .observability import active_websocket_connections

logger = logging.getLogger("civicfix.websocket")


class WebSocketEvent(BaseModel):
    """Base model for WebSocket events."""
    event_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = Field(default_factory=dict)


class ReportCreatedEvent(WebSocketEvent):
    """Event sent when a new report is submitted."""
    event_type: str = "report_created"

    def __init__(self, report_id: str, category: str, description: str, **kwargs):
        # Notification bodies stay short; long descriptions are truncated.
        body = description if len(description) <= 140 else f"{description[:137]}..."
        data = {"report_id": report_id, "category": category, "description": body}
        super().__init__(data=data, **kwargs)


class StatusUpdateEvent(WebSocketEvent):
    """Event sent when a report status changes."""
    event_type: str = "status_update"

    def __init__(self, report_id: str, old_status: str, new_status: str, updated_by: str, **kwargs):
        data = {
            "report_id": report_id,
            "old_status": old_status,
            "new_status": new_status,
            "updated_by": updated_by,
        }
        super().__init__(data=data, **kwargs)


class AssignmentEvent(WebSocketEvent):
    """Event sent when an agent is assigned to (or removed from) a report."""
    event_type: str = "assignment_update"

    def __init__(self, report_id: str, agent_id: Optional[str], status: str, assigned_by: str, **kwargs):
        data = {
            "report_id": report_id,
            "agent_id": agent_id,
            "status": status,
            "assigned_by": assigned_by,
        }
        super().__init__(data=data, **kwargs)


class PriorityEvent(WebSocketEvent):
    event_type: str = "priority_update"

    def __init__(self, report_id: str, priority: Optional[int], updated_by: str, **kwargs):
        data = {"report_id": report_id, "priority": priority, "updated_by": updated_by}
        super().__init__(data=data, **kwargs)


class ConnectionManager:
    """Manages WebSocket connections and broadcasting."""

    def __init__(self):
        self.active_connections: Dict[WebSocket, Dict[str, Any]] = {}
        self.connections_by_role: Dict[str, List[WebSocket]] = {
            "administrator": [],
            "agent": [],
            "reporter": [],
        }

    async def connect(self, websocket: WebSocket, user_id: str, user_role: str = "reporter"):
        """Accept a WebSocket connection and store user info."""
        await websocket.accept()
        self.active_connections[websocket] = {
            "user_id": user_id,
            "user_role": user_role,
            "connected_at": datetime.now(timezone.utc),
        }
        self.connections_by_role.setdefault(user_role, []).append(websocket)
        active_websocket_connections.labels(role=user_role).inc()
        logger.info("WebSocket connected: user_id=%s, role=%s", user_id, user_role)
        return user_id

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        user_info = self.active_connections.pop(websocket, None)
        if user_info is None:
            return
        user_role = user_info.get("user_role", "reporter")
        connections = self.connections_by_role.get(user_role, [])
        if websocket in connections:
            connections.remove(websocket)
        active_websocket_connections.labels(role=user_role).dec()
        logger.info("WebSocket disconnected: user_id=%s", user_info.get("user_id"))

    async def broadcast(self, event: WebSocketEvent, target_role: Optional[str] = None):
        """Broadcast an event to all connected clients or one role."""
        message = event.model_dump_json()

        if target_role:
            connections = list(self.connections_by_role.get(target_role, []))
        else:
            connections = list(self.active_connections.keys())

        if not connections:
            logger.debug("No connections to broadcast to (role=%s)", target_role)
            return

        disconnected = []
        for websocket in connections:
            try:
                await websocket.send_text(message)
            except Exception as e:
                logger.error("Error broadcasting to connection: %s", e)
                disconnected.append(websocket)

        for websocket in disconnected:
            self.disconnect(websocket)

        logger.info("Broadcasted %s to %d connections", event.event_type, len(connections))

    async def broadcast_new_report(self, report_id: str, category: str, description: str):
        """New reports go to administrators only."""
        await self.broadcast(
            ReportCreatedEvent(report_id=report_id, category=category, description=description),
            target_role="administrator",
        )

    async def broadcast_status_update(self, report_id: str, old_status: str, new_status: str, updated_by: str):
        await self.broadcast(
            StatusUpdateEvent(
                report_id=report_id,
                old_status=old_status,
                new_status=new_status,
                updated_by=updated_by,
            )
        )

    async def broadcast_assignment(self, report_id: str, agent_id: Optional[str], status: str, assigned_by: str):
        await self.broadcast(
            AssignmentEvent(report_id=report_id, agent_id=agent_id, status=status, assigned_by=assigned_by)
        )

    async def broadcast_priority(self, report_id: str, priority: Optional[int], updated_by: str):
        await self.broadcast(PriorityEvent(report_id=report_id, priority=priority, updated_by=updated_by))

    def get_connection_count(self) -> int:
        return len(self.active_connections)

    def get_connections_by_role(self) -> Dict[str, int]:
        return {role: len(connections) for role, connections in self.connections_by_role.items()}

    async def shutdown(self):
        """Close every open connection."""
        for websocket in list(self.active_connections.keys()):
            try:
                await websocket.close(code=1001)
            except Exception as e:
                logger.debug("Error closing websocket during shutdown: %s", e)
            self.disconnect(websocket)


# Global connection manager instance
manager = ConnectionManager()
