import logging

from opentelemetry.sdk.resources import SERVICE_NAME

from trove.core.telemetry import (
    PIPELINE_STAGES_ATTRIBUTE,
    _parse_headers,
    configure_logging,
    setup_pipeline_telemetry,
    shutdown_pipeline_telemetry,
)


def test_disabled_telemetry_builds_no_provider(settings) -> None:
    runtime = setup_pipeline_telemetry(settings, stages=("extract",))
    assert runtime.enabled is False
    assert runtime.provider is None
    shutdown_pipeline_telemetry(runtime)


def test_pipeline_resource_names_its_stages(settings, monkeypatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)
    enabled = settings.model_copy(update={"otel_enabled": True})

    runtime = setup_pipeline_telemetry(enabled, stages=("ingest", "extract"))
    try:
        attributes = runtime.provider.resource.attributes
        assert attributes[SERVICE_NAME] == "trove-pipeline-worker-all"
        assert attributes[PIPELINE_STAGES_ATTRIBUTE] == "ingest,extract"
    finally:
        shutdown_pipeline_telemetry(runtime)


def test_log_records_carry_empty_trace_ids_outside_spans() -> None:
    configure_logging()
    record = logging.getLogRecordFactory()("trove", logging.INFO, __file__, 1, "message", (), None)
    assert record.trace_id == "0" * 32
    assert record.span_id == "0" * 16


def test_exporter_headers_skip_malformed_pairs() -> None:
    assert _parse_headers("api-key=abc, broken ,x-team = ingest") == {"api-key": "abc", "x-team": "ingest"}
    assert _parse_headers(None) == {}
