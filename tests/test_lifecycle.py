from __future__ import annotations

import io
import json
import threading
import time

import httpx
import pytest
import typer

from pyk6.cli.lifecycle import GENERIC_FAILURE_CODE, CommandExecutionError, LifecycleController, LifecycleState
from pyk6.cli.main import require_flags
from pyk6.core.registry import ModuleRegistry, RegistrationConflict

REMOTE = "loki=host:1234,pushPeriod=1h"


@pytest.fixture(autouse=True)
def _commands(cli_app):
    @cli_app.command("ok")
    def ok(ctx: typer.Context) -> None:
        flags = require_flags(ctx)
        ctx.obj["controller"].logger.info(f"running with {flags.log_output}")

    @cli_app.command("fail")
    def fail() -> None:
        raise CommandExecutionError("bad invocation", code=3, hint="bad args")

    @cli_app.command("crash")
    def crash() -> None:
        raise RuntimeError("kaput")

    @cli_app.command("exit")
    def exit_() -> None:
        raise typer.Exit(code=5)

    @cli_app.command("done")
    def done() -> None:
        raise typer.Exit()

    @cli_app.command("duplicate")
    def duplicate() -> None:
        registry = ModuleRegistry()
        registry.register("foo", 1)
        registry.register("k6/x/foo", 2)


def test_success_exits_zero(controller, stdout_stream):
    code = controller.execute(["--log-output", "stdout", "ok"])

    assert code == 0
    assert "running with stdout" in stdout_stream.getvalue()
    assert controller.state is LifecycleState.TERMINATED
    assert controller.ctx.cancelled
    assert not controller.is_remote


def test_structured_error_sets_exit_code_and_logs_hint(controller, stdout_stream):
    code = controller.execute(["--log-output", "stdout", "--no-color", "fail"])

    output = stdout_stream.getvalue()
    assert code == 3
    assert "bad invocation" in output
    assert "hint=bad args" in output
    assert controller.state is LifecycleState.TERMINATED


def test_structured_error_in_json_format(controller, stdout_stream):
    code = controller.execute(["--log-output", "stdout", "--logformat", "json", "fail"])

    record = json.loads(stdout_stream.getvalue().splitlines()[-1])
    assert code == 3
    assert record["msg"] == "bad invocation"
    assert record["level"] == "error"
    assert record["hint"] == "bad args"


def test_structured_error_defaults_to_generic_code():
    assert CommandExecutionError("boom").code == GENERIC_FAILURE_CODE
    assert CommandExecutionError("boom").hint is None


def test_unstructured_error_uses_generic_code(controller, stderr_stream):
    code = controller.execute(["crash"])

    assert code == GENERIC_FAILURE_CODE
    assert "kaput" in stderr_stream.getvalue()
    assert "hint=" not in stderr_stream.getvalue()


def test_typer_exit_code_is_propagated(controller):
    assert controller.execute(["exit"]) == 5
    assert controller.state is LifecycleState.TERMINATED


def test_clean_typer_exit_is_success(controller, stderr_stream):
    code = controller.execute(["done"])

    assert code == 0
    assert "ERROR" not in stderr_stream.getvalue()
    assert "Exit" not in stderr_stream.getvalue()


def test_command_without_resolved_flags_exits_with_usage_status(cli_app, controller):
    @cli_app.command("flagless")
    def flagless(ctx: typer.Context) -> None:
        ctx.obj.pop("flags")
        require_flags(ctx)

    assert controller.execute(["flagless"]) == 2


def test_usage_error_is_a_generic_failure(controller, stderr_stream):
    code = controller.execute(["nope"])

    assert code == GENERIC_FAILURE_CODE
    assert "nope" in stderr_stream.getvalue()


def test_unsupported_log_output_aborts_before_command(controller, stdout_stream, stderr_stream):
    code = controller.execute(["--log-output", "syslog", "ok"])

    assert code == GENERIC_FAILURE_CODE
    assert "unsupported log output `syslog`" in stderr_stream.getvalue()
    assert "running with" not in stdout_stream.getvalue() + stderr_stream.getvalue()
    assert controller.sink.settings.output == "stderr"
    assert controller.flags is None


def test_environment_log_output_applies_when_flag_missing(monkeypatch, controller, stdout_stream):
    monkeypatch.setenv("K6_LOG_OUTPUT", "stdout")

    assert controller.execute(["ok"]) == 0
    assert "running with stdout" in stdout_stream.getvalue()


def test_empty_environment_log_output_is_rejected(monkeypatch, controller, stderr_stream):
    monkeypatch.setenv("K6_LOG_OUTPUT", "")

    assert controller.execute(["ok"]) == GENERIC_FAILURE_CODE
    assert "unsupported log output ``" in stderr_stream.getvalue()


def test_flag_overrides_environment_log_output(monkeypatch, controller, stdout_stream, stderr_stream):
    monkeypatch.setenv("K6_LOG_OUTPUT", "stdout")

    assert controller.execute(["--log-output", "stderr", "ok"]) == 0
    assert "running with stderr" in stderr_stream.getvalue()
    assert stdout_stream.getvalue() == ""


def test_verbose_logs_version(controller, stdout_stream):
    controller.execute(["-v", "--log-output", "stdout", "ok"])

    assert "pyk6 version: v0.1.0" in stdout_stream.getvalue()


def test_flags_are_recorded(controller, tmp_path):
    config = tmp_path / "k6.json"
    controller.execute(["-q", "--no-color", "-a", "0.0.0.0:7000", "-c", str(config), "--log-output", "none", "ok"])

    assert controller.flags is not None
    assert controller.flags.quiet is True
    assert controller.flags.no_color is True
    assert controller.flags.address == "0.0.0.0:7000"
    assert controller.flags.config_path == config
    assert controller.sink.settings.no_color is True


def test_no_subcommand_prints_help(controller, capsys):
    assert controller.execute([]) == 0
    assert "--log-output" in capsys.readouterr().out


def test_remote_success_drains_before_returning(controller, push_recorder, stdout_stream, stderr_stream):
    code = controller.execute(["--log-output", REMOTE, "ok"])

    assert code == 0
    assert controller.is_remote
    assert controller.sink.signal.closed
    assert controller.sink.settings.no_color is True
    assert push_recorder.lines() == [f"running with {REMOTE}"]
    assert "running with" not in stdout_stream.getvalue() + stderr_stream.getvalue()
    assert controller.state is LifecycleState.TERMINATED


def test_remote_failure_logs_locally_and_remotely(controller, push_recorder, stderr_stream):
    code = controller.execute(["--log-output", REMOTE, "fail"])

    assert code == 3
    assert push_recorder.lines() == ["bad invocation"]
    assert "bad invocation" in stderr_stream.getvalue()
    assert "hint=bad args" in stderr_stream.getvalue()


def test_remote_drain_waits_for_slow_delivery(cli_app, logger, fallback_logger):
    delivered = threading.Event()

    def slow_push(request: httpx.Request) -> httpx.Response:
        time.sleep(0.2)
        delivered.set()
        return httpx.Response(204)

    controller = LifecycleController(
        cli_app,
        logger=logger,
        fallback_logger=fallback_logger,
        stdout=io.StringIO(),
        stderr=io.StringIO(),
        transport=httpx.MockTransport(slow_push),
    )

    code = controller.execute(["--log-output", REMOTE, "ok"])

    assert code == 0
    assert delivered.is_set()
    assert controller.sink.signal.closed


def test_registration_conflict_is_fatal_but_context_is_cancelled(controller):
    with pytest.raises(RegistrationConflict):
        controller.execute(["duplicate"])

    assert controller.ctx.cancelled
    assert controller.state is LifecycleState.TERMINATED


def test_run_exits_process_with_status(controller):
    with pytest.raises(SystemExit) as excinfo:
        controller.run(["--log-output", "none", "fail"])

    assert excinfo.value.code == 3
