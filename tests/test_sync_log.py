import logging

from tillsync.services.sync_log import SYNC_LOGGER_NAMES, SyncLogBuffer, attach_sync_log


def _record(message: str) -> logging.LogRecord:
    return logging.LogRecord("tillsync.services.sync", logging.INFO, __file__, 1, message, (), None)


def test_buffer_keeps_most_recent_lines():
    buffer = SyncLogBuffer(max_lines=2)
    for index in range(3):
        buffer.emit(_record(f"line {index}"))

    lines = buffer.lines()
    assert len(lines) == 2
    assert lines[0].endswith("line 1")
    assert lines[1].endswith("line 2")


def test_subscribers_receive_snapshots_until_unsubscribed():
    buffer = SyncLogBuffer()
    seen = []
    unsubscribe = buffer.subscribe(seen.append)

    buffer.emit(_record("pushed 3 rows"))
    buffer.clear()
    unsubscribe()
    buffer.emit(_record("ignored"))

    assert len(seen) == 2
    assert seen[0][0].endswith("pushed 3 rows")
    assert seen[1] == []
    assert len(buffer.lines()) == 1


def test_broken_subscriber_does_not_stop_logging(mocker):
    buffer = SyncLogBuffer()
    handle_error = mocker.patch.object(buffer, "handleError")

    def broken(lines):
        raise RuntimeError("boom")

    buffer.subscribe(broken)
    buffer.emit(_record("still kept"))

    assert buffer.lines()[0].endswith("still kept")
    handle_error.assert_called_once()


def test_attach_is_idempotent():
    buffer = SyncLogBuffer()
    try:
        attach_sync_log(buffer)
        attach_sync_log(buffer)
        for name in SYNC_LOGGER_NAMES:
            assert logging.getLogger(name).handlers.count(buffer) == 1

        logging.getLogger("tillsync.services.sync").info("cycle finished")
        assert buffer.lines()[-1].endswith("cycle finished")
    finally:
        for name in SYNC_LOGGER_NAMES:
            logging.getLogger(name).removeHandler(buffer)
