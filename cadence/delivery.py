import logging
from dataclasses import dataclass

from .errors import CadenceError

logger = logging.getLogger(__name__)

CONTENT_TEMPLATES = {
    'reminder': "⏰ **Reminder:** {content}",
    'task': "📝 **Task:** {content}",
}

# Activity subcategory prefix -> emoji recorded on the activity entry
ACTIVITY_EMOJI = {
    'reminder': '⏰',
    'reminders': '⏰',
    'task': '📝',
    'tasks': '📝',
    'list': '🎯',
    'command': '🎯',
    'bot': '⚙️',
    'logs': '⚙️',
    'messages': '💬',
    'delete': '💬',
    'send': '💬',
}


def render_content(kind: str, content: str) -> str:
    """Message text actually sent for a scheduled item of ``kind``."""
    template = CONTENT_TEMPLATES.get(kind)
    return template.format(content=content) if template else content


@dataclass
class DeliveryOutcome:
    status: str
    message_id: str | None = None
    error: str | None = None
    log_id: int | None = None

    @property
    def ok(self) -> bool:
        return self.status == 'success'

    def to_dict(self) -> dict:
        return {'status': self.status, 'message_id': self.message_id, 'error': self.error, 'log_id': self.log_id}


class Delivery:
    """Sends content through ``sender`` and records every attempt in ``send_logs``.

    ``sender(channel_id, content)`` is an awaitable returning the external
    message id; any exception it raises becomes a failed outcome. The send-log
    row is written whatever the send result was.
    """

    def __init__(self, db, sender):
        self.db = db
        self.sender = sender

    async def deliver(
        self,
        kind: str,
        channel_id: str,
        content: str,
        *,
        user_id: str = None,
        ref_id: int = None,
        source: str = None,
        retry_count: int = 0,
    ) -> DeliveryOutcome:
        try:
            message_id = await self.sender(channel_id, content)
            outcome = DeliveryOutcome('success', message_id=str(message_id) if message_id is not None else None)
            logger.info("Delivered %s (ref %s) to channel %s", kind, ref_id, channel_id)
        except Exception as e:
            error = str(e) or type(e).__name__
            outcome = DeliveryOutcome('failed', error=error)
            logger.warning("Delivery of %s (ref %s) to channel %s failed: %s", kind, ref_id, channel_id, error)

        try:
            outcome.log_id = await self.db.append_send_log(
                kind,
                status=outcome.status,
                source=source,
                channel_id=channel_id,
                user_id=user_id,
                content=content,
                error=outcome.error,
                message_id=outcome.message_id,
                ref_id=ref_id,
                retry_count=retry_count,
            )
        except CadenceError:
            logger.exception("Could not record send log for %s (ref %s)", kind, ref_id)
        return outcome

    async def deliver_item(self, kind: str, row: dict, source: str = 'scheduler', retry_count: int = 0) -> DeliveryOutcome:
        """Deliver a task/reminder row using its category template."""
        return await self.deliver(
            kind,
            row['channel_id'],
            render_content(kind, row['content']),
            user_id=row.get('user_id'),
            ref_id=row['id'],
            source=source,
            retry_count=retry_count,
        )


async def record_activity(db, subcategory: str, **fields) -> int | None:
    """Append an ``activity:<subcategory>`` entry; failures are logged, never raised."""
    fields.setdefault('emoji', ACTIVITY_EMOJI.get(subcategory.split('_', 1)[0]))
    try:
        return await db.append_activity_log(f"activity:{subcategory}", **fields)
    except CadenceError:
        logger.exception("Could not record activity %s", subcategory)
        return None
