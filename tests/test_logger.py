import json

from fusionrec.utils.logger import Logger, get_logger


def _payload(line):
    return json.loads(line.split(":", 1)[1].strip())


def test_json_records_carry_context(monkeypatch, capsys):
    monkeypatch.setenv("LOG_JSON", "1")
    log = Logger("fusionrec.tests.json", component="engine").bind(request_id="r1")
    log.info("Recommendations ready", count=3)

    record = _payload(capsys.readouterr().out.strip())
    assert record["event"] == "Recommendations ready"
    assert record["component"] == "engine"
    assert record["request_id"] == "r1"
    assert record["count"] == 3
    assert "ts" in record


def test_plain_records(monkeypatch, capsys):
    monkeypatch.setenv("LOG_JSON", "0")
    Logger("fusionrec.tests.plain").warn("Generator timed out", algorithm="DEEP")
    out = capsys.readouterr().out
    assert "WARNING" in out
    assert "Generator timed out | algorithm=DEEP" in out


def test_debug_is_filtered_at_info(monkeypatch, capsys):
    monkeypatch.setenv("LOG_LEVEL", "INFO")
    Logger("fusionrec.tests.level").debug("noise")
    assert capsys.readouterr().out == ""


def test_get_logger_is_idempotent():
    first = get_logger("fusionrec.tests.idempotent")
    second = get_logger("fusionrec.tests.idempotent")
    assert first is second
    assert len(second.handlers) == 1


def test_structured_loggers_share_one_handler():
    Logger("fusionrec.tests.shared", component="a")
    Logger("fusionrec.tests.shared", component="b")
    logger = get_logger("fusionrec.tests.shared")
    assert len(logger.handlers) == 1
    assert logger.propagate is False
