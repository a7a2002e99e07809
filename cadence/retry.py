import logging

from .delivery import DeliveryOutcome
from .errors import NotFoundError, UnsupportedError

logger = logging.getLogger(__name__)

RETRYABLE_KINDS = ('task', 'reminder')


async def retry_send(db, delivery, log_id: int) -> DeliveryOutcome:
    """Replay a failed task/reminder send as a brand-new send-log entry.

    The failed entry is left untouched; the new one keeps its kind and
    ``ref_id`` and carries ``retry_count`` one higher.
    """
    entry = await db.get_send_log(log_id)
    if entry is None or entry['status'] != 'failed':
        raise NotFoundError(f"Failed log entry {log_id} not found")
    if entry['kind'] not in RETRYABLE_KINDS:
        raise UnsupportedError(f"Cannot retry log entries of kind {entry['kind']!r}")
    if entry['ref_id'] is None:
        raise UnsupportedError("Cannot retry: missing reference ID")

    item = await db.get_item(entry['kind'], entry['ref_id'])
    if item is None:
        raise NotFoundError(f"Original {entry['kind']} {entry['ref_id']} not found")

    outcome = await delivery.deliver_item(
        entry['kind'], item, source='retry', retry_count=(entry['retry_count'] or 0) + 1
    )
    logger.info("Retried send log %s: %s (new log %s)", log_id, outcome.status, outcome.log_id)
    return outcome
