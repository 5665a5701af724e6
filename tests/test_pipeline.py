"""Tests for the step orchestrator and the declared installation steps."""
from __future__ import annotations

from collections.abc import Callable

import pytest

from provisionctl.config import AppConfig
from provisionctl.errors import (
    CommandError,
    ConflictError,
    InstallationCancelledError,
    InstallationError,
    InstallationTimeoutError,
    PreflightError,
)
from provisionctl.events import EventEmitter, EventRecorder, EventType, InstallationEvent
from provisionctl.models import (
    InstallationOptions,
    PipelineStatus,
    ServerCapabilities,
    SiteCustomization,
    StepStatus,
    ThemeReference,
    completed_ids,
)
from provisionctl.pipeline import DEADLINE_EXCEEDED, Orchestrator, StepContext, StepDescriptor
from provisionctl.stack import WordOpsStack
from provisionctl.steps import build_steps
from provisionctl.templates import TemplateEngine

ALL_STEP_IDS = [
    "preflight",
    "system_update",
    "dependencies",
    "stack_install",
    "site_cli",
    "site_create",
    "customize",
    "hardening",
]
CAPABLE = ServerCapabilities(
    has_web_server=True,
    has_database=True,
    has_runtime=True,
    has_site_manager=True,
    has_site_cli=True,
    runtime_version="8.2.12",
)
FRESH = ServerCapabilities()
ADMIN_PASSWORD = "Sup3r-Secret-Pw"


def _options(**kwargs: object) -> InstallationOptions:
    values: dict[str, object] = {
        "domain": "example.com",
        "requester_email": "owner@example.com",
        "requester_id": "user-1",
    }
    values.update(kwargs)
    return InstallationOptions(**values)  # type: ignore[arg-type]


def _context(
    connection: object,
    config: AppConfig,
    *,
    capabilities: ServerCapabilities,
    options: InstallationOptions | None = None,
    port: int | None = None,
) -> StepContext:
    return StepContext(
        connection=connection,  # type: ignore[arg-type]
        options=options or _options(),
        capabilities=capabilities,
        stack=WordOpsStack(config.site, create_timeout=config.pipeline.site_create_timeout),
        templates=TemplateEngine.with_overrides(None),
        config=config,
        admin_username="admin",
        admin_password=ADMIN_PASSWORD,
        admin_email="owner@example.com",
        site_title="Demo Site",
        assigned_port=port,
        preview_domain="abcd1234-demo-site.preview.example.net" if port else None,
    )


def _orchestrator(
    *, deadline: float = 30.0, steps: list[StepDescriptor] | None = None
) -> tuple[Orchestrator, EventRecorder]:
    emitter = EventEmitter("inst-1")
    recorder = EventRecorder()
    emitter.subscribe(recorder)
    orchestrator = Orchestrator(steps or build_steps(), emitter=emitter, deadline_seconds=deadline)
    return orchestrator, recorder


def _statuses(orchestrator: Orchestrator) -> dict[str, StepStatus]:
    return {record.id: record.status for record in orchestrator.records}


def test_fresh_host_runs_every_step_in_order(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """A fresh host goes through bootstrap, creation, customisation and hardening."""
    connection = fake_host(tools=())
    connection.connect()
    orchestrator, recorder = _orchestrator()

    records = orchestrator.run(_context(connection, app_config, capabilities=FRESH))

    assert completed_ids(records) == ALL_STEP_IDS
    assert orchestrator.status is PipelineStatus.SUCCEEDED
    starts = [event.payload["id"] for event in recorder.of_type(EventType.STEP_START)]
    assert starts == ALL_STEP_IDS
    assert all(record.duration_ms is not None for record in records)
    assert connection.ran("apt-get update")
    assert connection.ran("wo stack install")
    assert connection.ran("ufw allow 22/tcp")


def test_capable_host_with_skip_flag_skips_bootstrap_and_hardening(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """Bootstrap and hardening are skipped on a configured host."""
    connection = fake_host()
    connection.connect()
    orchestrator, recorder = _orchestrator()
    context = _context(
        connection, app_config, capabilities=CAPABLE, options=_options(skip_system_setup=True)
    )

    records = orchestrator.run(context)

    assert completed_ids(records) == ["preflight", "site_create", "customize"]
    statuses = _statuses(orchestrator)
    for step_id in ("system_update", "dependencies", "stack_install", "site_cli", "hardening"):
        assert statuses[step_id] is StepStatus.SKIPPED
    skipped = [event.payload["id"] for event in recorder.of_type(EventType.STEP_SKIPPED)]
    assert skipped == ["system_update", "dependencies", "stack_install", "site_cli", "hardening"]
    assert not connection.ran("apt-get")


def test_configured_host_still_runs_preflight(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """Detection of a configured host never disables preflight."""
    connection = fake_host()
    connection.connect()
    orchestrator, _ = _orchestrator()

    orchestrator.run(_context(connection, app_config, capabilities=CAPABLE))

    statuses = _statuses(orchestrator)
    assert statuses["preflight"] is StepStatus.COMPLETED
    assert statuses["system_update"] is StepStatus.SKIPPED
    assert connection.ran("df -Pm")


def test_missing_site_cli_installed_on_fast_path(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """WP-CLI is installed on demand even when system setup is skipped."""
    connection = fake_host(tools={"wo", "nginx", "mysql", "php"})
    connection.connect()
    orchestrator, _ = _orchestrator()
    capabilities = ServerCapabilities(
        has_web_server=True, has_database=True, has_runtime=True, has_site_manager=True
    )

    records = orchestrator.run(
        _context(
            connection,
            app_config,
            capabilities=capabilities,
            options=_options(skip_system_setup=True),
        )
    )

    assert completed_ids(records) == ["preflight", "site_cli", "site_create", "customize"]
    assert connection.ran("wp-cli.phar")


def test_site_create_timeout_with_existing_site_completes(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """Create exiting 124 while the site exists counts as success with a warning."""
    connection = fake_host(create_exit_code=124)
    connection.connect()
    orchestrator, _ = _orchestrator()

    orchestrator.run(_context(connection, app_config, capabilities=CAPABLE))

    record = orchestrator.record_for("site_create")
    assert record.status is StepStatus.COMPLETED
    assert any("124" in warning for warning in record.warnings)
    assert connection.ran("pkill -f 'wo site create'")


def test_site_create_failure_without_site_raises_command_error(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """Create failing with no site present fails the step and masks the password."""
    connection = fake_host(overrides={"wo site create": {"exit_code": 1, "stderr": "boom"}})
    connection.connect()
    orchestrator, recorder = _orchestrator()

    with pytest.raises(InstallationError) as excinfo:
        orchestrator.run(_context(connection, app_config, capabilities=CAPABLE))

    exc = excinfo.value
    assert exc.step_id == "site_create"
    assert isinstance(exc.cause, CommandError)
    assert exc.context["completedStepIds"] == ["preflight"]
    assert exc.context["currentStep"] == "site_create"
    assert ADMIN_PASSWORD not in str(exc)
    assert orchestrator.status is PipelineStatus.FAILED
    assert _statuses(orchestrator)["customize"] is StepStatus.PENDING
    errors = recorder.of_type(EventType.STEP_ERROR)
    assert len(errors) == 1
    assert errors[0].payload["context"]["capabilities"]["is_configured"] is True


@pytest.mark.parametrize(
    ("host_kwargs", "reason"),
    [
        ({"sites": {"example.com"}}, "site manager"),
        ({"vhosts": {"example.com"}}, "nginx vhost"),
        ({"wp_configs": {"example.com"}}, "WordPress is already installed"),
        ({"databases": {"example_com"}}, "database"),
    ],
)
def test_preflight_conflicts_stop_before_any_mutation(
    fake_host: Callable[..., object],
    app_config: AppConfig,
    host_kwargs: dict[str, object],
    reason: str,
) -> None:
    """Any trace of an existing site fails preflight with a conflict."""
    connection = fake_host(**host_kwargs)
    connection.connect()
    orchestrator, recorder = _orchestrator()

    with pytest.raises(InstallationError) as excinfo:
        orchestrator.run(_context(connection, app_config, capabilities=CAPABLE))

    assert isinstance(excinfo.value.cause, ConflictError)
    assert reason in str(excinfo.value)
    statuses = _statuses(orchestrator)
    assert statuses["preflight"] is StepStatus.FAILED
    for step_id in ALL_STEP_IDS[1:]:
        assert statuses[step_id] is StepStatus.PENDING
    starts = [event.payload["id"] for event in recorder.of_type(EventType.STEP_START)]
    assert starts == ["preflight"]
    assert not connection.ran("wo site create")


def test_site_appearing_after_preflight_blocks_creation(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """A site created by someone else after preflight is a conflict, not overwritten."""
    connection = fake_host(overrides={"wo site info": [{"exit_code": 1}, {"exit_code": 0}]})
    connection.connect()
    orchestrator, _ = _orchestrator()

    with pytest.raises(InstallationError) as excinfo:
        orchestrator.run(_context(connection, app_config, capabilities=CAPABLE))

    assert excinfo.value.step_id == "site_create"
    assert isinstance(excinfo.value.cause, ConflictError)
    statuses = _statuses(orchestrator)
    assert statuses["preflight"] is StepStatus.COMPLETED
    assert statuses["site_create"] is StepStatus.FAILED
    assert len(connection.ran("wo site info")) == 2
    assert not connection.ran("wo site create")


def test_preflight_rejects_low_disk_space(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """Less free space than configured fails preflight."""
    connection = fake_host(free_mb=200)
    connection.connect()
    orchestrator, _ = _orchestrator()

    with pytest.raises(InstallationError) as excinfo:
        orchestrator.run(_context(connection, app_config, capabilities=CAPABLE))

    assert isinstance(excinfo.value.cause, PreflightError)
    assert "200 MB" in str(excinfo.value)


def test_critical_bootstrap_failure_is_fail_fast(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """A failed critical command aborts the pipeline before later steps start."""
    connection = fake_host(tools=(), overrides={"apt-get install": {"exit_code": 100}})
    connection.connect()
    orchestrator, _ = _orchestrator()

    with pytest.raises(InstallationError) as excinfo:
        orchestrator.run(_context(connection, app_config, capabilities=FRESH))

    assert excinfo.value.step_id == "dependencies"
    assert excinfo.value.context["completedStepIds"] == ["preflight", "system_update"]
    statuses = _statuses(orchestrator)
    assert statuses["dependencies"] is StepStatus.FAILED
    assert statuses["stack_install"] is StepStatus.PENDING
    assert not connection.ran("wo stack install")


def test_best_effort_commands_record_warnings(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """Hardening failures are tolerated and reported as warnings."""
    connection = fake_host(tools=(), overrides={"ufw allow": {"exit_code": 1}})
    connection.connect()
    orchestrator, _ = _orchestrator()

    orchestrator.run(_context(connection, app_config, capabilities=FRESH))

    record = orchestrator.record_for("hardening")
    assert record.status is StepStatus.COMPLETED
    assert len(record.warnings) == 3


def test_theme_falls_back_to_download_url_and_plugins_are_tolerant(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """A missing theme slug retries by URL; a failing plugin only warns."""
    connection = fake_host(
        overrides={
            "theme install astra": {"exit_code": 1},
            "plugin install broken-plugin": {"exit_code": 1},
        }
    )
    connection.connect()
    orchestrator, _ = _orchestrator()
    options = _options(
        customization=SiteCustomization(
            theme=ThemeReference(slug="astra", download_url="https://themes.example/astra.zip"),
            plugins=("seo-tools", "broken-plugin"),
        )
    )

    orchestrator.run(_context(connection, app_config, capabilities=CAPABLE, options=options))

    assert connection.ran("theme install https://themes.example/astra.zip")
    assert connection.ran("plugin install seo-tools --activate")
    record = orchestrator.record_for("customize")
    assert record.status is StepStatus.COMPLETED
    assert record.warnings == ["Plugin 'broken-plugin' could not be installed."]


def test_preview_port_configures_vhost_and_site_url(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """An assigned port renders the preview vhost and rewrites the site URL."""
    connection = fake_host()
    connection.connect()
    orchestrator, _ = _orchestrator()

    orchestrator.run(_context(connection, app_config, capabilities=CAPABLE, port=8080))

    assert connection.ran("wo site create example.com-port8080")
    vhost_writes = connection.ran("cat > /etc/nginx/sites-available/example.com-port8080")
    assert len(vhost_writes) == 1
    assert "listen 8080;" in vhost_writes[0]
    assert connection.ran("nginx -t")
    assert connection.ran("systemctl reload nginx")
    assert connection.ran("option update siteurl http://1.2.3.4:8080")


def test_deadline_disconnects_and_marks_running_step_failed(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """Exceeding the deadline raises a timeout and tears the session down."""
    connection = fake_host(tools=(), overrides={"apt-get update": {"delay": 30}})
    connection.connect()
    orchestrator, recorder = _orchestrator(deadline=0.2)

    with pytest.raises(InstallationTimeoutError) as excinfo:
        orchestrator.run(_context(connection, app_config, capabilities=FRESH))

    assert excinfo.value.step_id == "system_update"
    assert excinfo.value.context["completedStepIds"] == ["preflight"]
    assert connection.connected is False
    assert orchestrator.status is PipelineStatus.TIMED_OUT
    record = orchestrator.record_for("system_update")
    assert record.status is StepStatus.FAILED
    assert record.error == DEADLINE_EXCEEDED
    assert recorder.types()[-1] == EventType.ERROR.value


def test_cancel_before_run_starts_no_steps(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """A cancellation requested up front is observed before the first step."""
    connection = fake_host()
    connection.connect()
    orchestrator, recorder = _orchestrator()
    orchestrator.cancel()

    with pytest.raises(InstallationCancelledError) as excinfo:
        orchestrator.run(_context(connection, app_config, capabilities=CAPABLE))

    assert excinfo.value.next_step == "preflight"
    assert orchestrator.status is PipelineStatus.CANCELLED
    assert all(record.status is StepStatus.PENDING for record in orchestrator.records)
    assert connection.connected is False
    assert recorder.types() == [EventType.ERROR.value]


def test_cancel_between_steps_stops_after_current_step(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """Cancelling during a step lets it finish and stops before the next one."""
    connection = fake_host()
    connection.connect()
    orchestrator, _ = _orchestrator()

    def cancel_after_preflight(event: InstallationEvent) -> None:
        if event.type is EventType.STEP_COMPLETE and event.payload["id"] == "preflight":
            orchestrator.cancel()

    orchestrator.emitter.subscribe(cancel_after_preflight)

    with pytest.raises(InstallationCancelledError):
        orchestrator.run(_context(connection, app_config, capabilities=CAPABLE))

    statuses = _statuses(orchestrator)
    assert statuses["preflight"] is StepStatus.COMPLETED
    assert statuses["site_create"] is StepStatus.PENDING
    assert not connection.ran("wo site create")


def test_orchestrator_runs_only_once(
    fake_host: Callable[..., object], app_config: AppConfig
) -> None:
    """A second run on the same orchestrator is rejected."""
    connection = fake_host()
    connection.connect()
    orchestrator, _ = _orchestrator()
    context = _context(connection, app_config, capabilities=CAPABLE)
    orchestrator.run(context)

    with pytest.raises(RuntimeError):
        orchestrator.run(context)


def test_duplicate_step_ids_rejected() -> None:
    """Step ids must be unique within a pipeline."""
    step = StepDescriptor("same", "Same", lambda ctx: None)
    with pytest.raises(ValueError):
        Orchestrator([step, step], emitter=EventEmitter("x"))
