import io
import logging
import signal

import pytest
from flask import Flask

from aes_tracer import main as main_module
from aes_tracer.logs import configure_logging
from aes_tracer.service import get_service


@pytest.fixture
def started(monkeypatch, restore_root_logger):
    calls = {}

    def fake_run(self, **kwargs):
        calls["app"] = self
        calls["run"] = kwargs

    def fake_signal(signum, handler):
        calls.setdefault("signals", {})[signum] = handler

    monkeypatch.setattr(Flask, "run", fake_run)
    monkeypatch.setattr(main_module.signal, "signal", fake_signal)
    monkeypatch.setattr(main_module, "configure_logging", lambda *args, **kwargs: None)
    for name in ("PORT", "HOST", "ENABLE_TLS", "TARGET_HOST", "TRACE_ROUTE", "TRACE_PREFIX", "LOG_LEVEL", "SERVICE_NAME"):
        monkeypatch.delenv(name, raising=False)
    return calls


def test_runs_with_defaults(started):
    main_module.main()
    assert started["run"] == {"host": "0.0.0.0", "port": 8080, "threaded": True, "ssl_context": None}


def test_runs_tls_on_8443(started, monkeypatch):
    monkeypatch.setenv("ENABLE_TLS", "true")
    monkeypatch.setenv("HOST", "127.0.0.1")
    main_module.main()
    assert started["run"]["host"] == "127.0.0.1"
    assert started["run"]["port"] == 8443
    assert started["run"]["ssl_context"] == ("/certs/cert.pem", "/certs/key.pem")


def test_startup_names_the_service(started, monkeypatch, caplog):
    monkeypatch.setenv("SERVICE_NAME", "edge-tracer")
    with caplog.at_level(logging.INFO, logger="aes_tracer.main"):
        main_module.main()
    assert "edge-tracer listening on :8080 (tls=False)" in caplog.text


def test_sigterm_marks_unhealthy_without_exiting(started):
    main_module.main()
    app = started["app"]
    handler = started["signals"][signal.SIGTERM]

    handler(signal.SIGTERM, None)

    assert not get_service(app).readiness.is_ready()
    assert app.test_client().get("/health").status_code == 500


def test_bad_port_is_fatal(started, monkeypatch):
    monkeypatch.setenv("PORT", "99999")
    with pytest.raises(SystemExit) as excinfo:
        main_module.main()
    assert excinfo.value.code == 1
    assert "run" not in started


def test_log_lines_carry_request_id(app, restore_root_logger):
    stream = io.StringIO()
    configure_logging("DEBUG", stream=stream)

    with app.test_request_context("/health", headers={"X-Request-Id": "req-42"}):
        app.preprocess_request()
        logging.getLogger("aes_tracer.example").info("hello")
    logging.getLogger("aes_tracer.example").info("outside")

    output = stream.getvalue()
    assert "INFO [req-42] aes_tracer.example: hello" in output
    assert "INFO [-] aes_tracer.example: outside" in output
