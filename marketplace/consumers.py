from channels.generic.websocket import AsyncJsonWebsocketConsumer

from .notifier import user_events_group_name


class EventsConsumer(AsyncJsonWebsocketConsumer):
    """Streams the notifier events addressed to the connected user."""

    CLOSE_CODES = {
        "unauthorized": 4401,
    }

    async def connect(self):
        user = self.scope.get("user")
        if user is None or not getattr(user, "is_authenticated", False):
            await self.close(code=self.CLOSE_CODES["unauthorized"])
            return

        self.group_name = user_events_group_name(user.id)
        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()

    async def disconnect(self, close_code):
        group_name = getattr(self, "group_name", "")
        if group_name:
            await self.channel_layer.group_discard(group_name, self.channel_name)
        await super().disconnect(close_code)

    async def receive_json(self, content, **kwargs):
        event_type = (content or {}).get("type")
        if event_type == "ping":
            await self.send_json({"type": "pong"})

    async def marketplace_event(self, event):
        await self.send_json({"type": event.get("event", ""), "payload": event.get("payload") or {}})
