import pytest

from cadence.errors import InvalidCursorError, ValidationError
from cadence.logquery import (
    DEFAULT_LIMIT,
    LogFilter,
    decode_cursor,
    encode_cursor,
    merge_page,
    parse_limit,
)


def row(ts, row_id, log_type='send'):
    return {'timestamp': ts, 'id': row_id, 'log_type': log_type}


class TestCursor:
    def test_decode_returns_canonical_timestamp(self):
        ts, row_id, log_type = decode_cursor('2026-10-19T12:00:00+00:00_42_send')
        assert ts == '2026-10-19T12:00:00.000000+00:00'
        assert row_id == 42
        assert log_type == 'send'

    def test_decode_accepts_encoded(self):
        cursor = encode_cursor('2026-10-19T12:00:00.123456+00:00', 7, 'activity')
        assert decode_cursor(cursor) == ('2026-10-19T12:00:00.123456+00:00', 7, 'activity')

    @pytest.mark.parametrize('cursor', [
        'garbage',
        '_12_send',
        '2026-10-19T12:00:00+00:00__send',
        '2026-10-19T12:00:00+00:00_abc_send',
        '2026-10-19T12:00:00+00:00_-3_send',
        '2026-10-19T12:00:00+00:00_12',
        '2026-10-19T12:00:00+00:00_12_audit',
        'yesterday_12_send',
    ])
    def test_malformed_cursor_is_rejected(self, cursor):
        with pytest.raises(InvalidCursorError):
            decode_cursor(cursor)


class TestLimit:
    def test_default(self):
        assert parse_limit(None) == DEFAULT_LIMIT
        assert parse_limit('') == DEFAULT_LIMIT

    def test_valid(self):
        assert parse_limit('25') == 25

    @pytest.mark.parametrize('raw', ['0', '201', '-1', 'ten', '2.5'])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError):
            parse_limit(raw)


def test_filter_from_params_ignores_blanks():
    f = LogFilter.from_params({'kind': ' task ', 'status': '', 'q': '   '})
    assert f == LogFilter(kind='task')


class TestMergePage:
    def test_interleaves_tables_newest_first(self):
        sends = [row('2026-10-19T10:00:03', 5), row('2026-10-19T10:00:01', 4)]
        activity = [row('2026-10-19T10:00:02', 9, 'activity')]
        page = merge_page([sends, activity], limit=10)
        assert [r['id'] for r in page.logs] == [5, 9, 4]
        assert page.has_more is False
        assert page.next_cursor is None

    def test_ties_break_on_id(self):
        page = merge_page([[row('2026-10-19T10:00:00', 3)], [row('2026-10-19T10:00:00', 8, 'activity')]], limit=5)
        assert [r['id'] for r in page.logs] == [8, 3]

    def test_equal_timestamp_and_id_break_on_table(self):
        page = merge_page([[row('2026-10-19T10:00:00', 1, 'activity')], [row('2026-10-19T10:00:00', 1)]], limit=1)
        assert [r['log_type'] for r in page.logs] == ['send']
        assert page.next_cursor == encode_cursor('2026-10-19T10:00:00', 1, 'send')

    def test_next_cursor_points_at_last_returned_row(self):
        rows = [row(f'2026-10-19T10:00:0{i}', i) for i in range(5, 0, -1)]
        page = merge_page([rows], limit=3)
        assert [r['id'] for r in page.logs] == [5, 4, 3]
        assert page.has_more is True
        assert page.next_cursor == encode_cursor('2026-10-19T10:00:03', 3, 'send')


async def seed(db, now, sends=7, activities=6):
    for i in range(max(sends, activities)):
        if i < sends:
            await db.append_send_log(
                'task' if i % 2 else 'reminder', status='failed' if i % 3 == 0 else 'success',
                channel_id='100' if i % 2 else '200', content=f'send {i}', error='timeout' if i % 3 == 0 else None,
            )
        now.advance(seconds=1)
        if i < activities:
            await db.append_activity_log('activity:task_added', channel_id='100', action='add_task')
        now.advance(seconds=1)


@pytest.mark.asyncio
async def test_pagination_returns_every_entry_exactly_once(db, now):
    await seed(db, now)

    seen = []
    cursor = None
    pages = 0
    while True:
        page = await db.query_logs(cursor=cursor, limit=4)
        seen.extend(page.logs)
        pages += 1
        if not page.has_more:
            assert page.next_cursor is None
            break
        assert len(page.logs) == 4
        cursor = page.next_cursor

    assert pages == 4
    keys = [(e['log_type'], e['id']) for e in seen]
    assert len(keys) == len(set(keys)) == 13
    order = [(e['timestamp'], e['id']) for e in seen]
    assert order == sorted(order, reverse=True)


@pytest.mark.asyncio
async def test_entries_written_between_pages_do_not_shift_later_pages(db, now):
    await seed(db, now, sends=3, activities=3)
    first = await db.query_logs(limit=2)

    await db.append_send_log('task', status='success', content='newer')
    rest = await db.query_logs(cursor=first.next_cursor, limit=50)

    ids = [(e['log_type'], e['id']) for e in first.logs + rest.logs]
    assert len(ids) == len(set(ids)) == 6


@pytest.mark.asyncio
async def test_rows_sharing_timestamp_and_id_across_tables_are_both_paged(db):
    # same clock reading, and both tables start their ids at 1
    await db.append_send_log('task', status='success', content='standup')
    await db.append_activity_log('activity:task_added')

    first = await db.query_logs(limit=1)
    second = await db.query_logs(cursor=first.next_cursor, limit=1)

    assert [(e['log_type'], e['id']) for e in first.logs] == [('send', 1)]
    assert first.has_more is True
    assert [(e['log_type'], e['id']) for e in second.logs] == [('activity', 1)]
    assert second.has_more is False


@pytest.mark.asyncio
async def test_status_and_channel_filters(db, now):
    await seed(db, now)

    failed = await db.query_logs(LogFilter(status='failed'))
    assert failed.logs
    assert all(e['status'] == 'failed' for e in failed.logs)

    channel = await db.query_logs(LogFilter(channel_id='200'))
    assert channel.logs
    assert all(e['channel_id'] == '200' and e['log_type'] == 'send' for e in channel.logs)


@pytest.mark.asyncio
async def test_kind_filter_is_substring_match(db, now):
    await seed(db, now)
    page = await db.query_logs(LogFilter(kind='activity:'))
    assert len(page.logs) == 6
    assert {e['log_type'] for e in page.logs} == {'activity'}


@pytest.mark.asyncio
async def test_free_text_search_spans_both_tables(db, now):
    await seed(db, now)
    await db.append_activity_log('activity:command_error', status='failed', error='timeout while deferring')

    page = await db.query_logs(LogFilter(q='timeout'))
    types = {e['log_type'] for e in page.logs}
    assert types == {'send', 'activity'}


@pytest.mark.asyncio
async def test_search_treats_wildcards_literally(db):
    await db.append_send_log('send_once', status='success', content='100% done')
    await db.append_send_log('send_once', status='success', content='1000 done')

    page = await db.query_logs(LogFilter(q='100%'))
    assert [e['content'] for e in page.logs] == ['100% done']


@pytest.mark.asyncio
async def test_invalid_cursor_is_rejected_by_store(db):
    with pytest.raises(InvalidCursorError):
        await db.query_logs(cursor='not-a-cursor')


@pytest.mark.asyncio
async def test_search_ignores_activity_action(db):
    await db.append_activity_log('activity:logs_rotated', action='rotate_logs')

    assert (await db.query_logs(LogFilter(q='rotate_logs'))).logs == []
    assert len((await db.query_logs(LogFilter(q='logs_rotated'))).logs) == 1
