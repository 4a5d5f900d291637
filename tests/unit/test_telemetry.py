"""Unit tests for telemetry service"""

from unittest.mock import MagicMock, patch

from src.services.telemetry import TelemetryService


def _enable_logging(mock_config):
    mock_config.otel_logging_enabled = True
    mock_config.otel_tracing_enabled = False
    mock_config.otel_endpoint = "http://localhost:4318"
    mock_config.otel_service_name = "test-service"
    mock_config.otel_service_version = "1.0.0"
    mock_config.otel_log_full_results = False


class TestTelemetryService:
    """Test telemetry service initialization and logging"""

    @patch("src.services.telemetry.config")
    def test_telemetry_service_disabled(self, mock_config):
        """Test that telemetry can be disabled"""
        mock_config.otel_logging_enabled = False
        mock_config.otel_tracing_enabled = False

        service = TelemetryService()

        assert service.logging_enabled is False
        assert service.tracing_enabled is False
        assert service.otel_logger is None

    @patch("src.services.telemetry.config")
    @patch("src.services.telemetry.set_logger_provider")
    def test_telemetry_service_enabled(self, mock_set_logger_provider, mock_config):
        """Test that telemetry initializes when enabled"""
        _enable_logging(mock_config)

        service = TelemetryService()

        assert service.logging_enabled is True
        assert service.tracing_enabled is False
        assert service.logger_provider is not None
        mock_set_logger_provider.assert_called_once()

    @patch("src.services.telemetry.config")
    @patch("src.services.telemetry.trace.set_tracer_provider")
    def test_telemetry_tracing_enabled(self, mock_set_tracer_provider, mock_config):
        """Test that tracing initializes when enabled"""
        mock_config.otel_logging_enabled = False
        mock_config.otel_tracing_enabled = True
        mock_config.otel_endpoint = "http://localhost:4318/v1/traces"
        mock_config.otel_service_name = "test-service"
        mock_config.otel_service_version = "1.0.0"

        service = TelemetryService()

        assert service.tracing_enabled is True
        assert service.tracer_provider is not None
        mock_set_tracer_provider.assert_called_once()

    @patch("src.services.telemetry.config")
    def test_log_query_when_disabled(self, mock_config):
        """Test that logging does nothing when disabled"""
        mock_config.otel_logging_enabled = False
        mock_config.otel_tracing_enabled = False

        service = TelemetryService()
        service.log_query(
            tool_name="search_notes",
            query="test query",
            parameters={"limit": 5},
            response={"results": []},
        )

    @patch("src.services.telemetry.config")
    @patch("src.services.telemetry.set_logger_provider")
    def test_log_search_with_response(self, mock_set_logger_provider, mock_config):
        """Test logging a successful search with response"""
        _enable_logging(mock_config)
        mock_otel_logger = MagicMock()

        service = TelemetryService()
        service.otel_logger = mock_otel_logger

        service.log_query(
            tool_name="search_notes",
            query="garden planning",
            parameters={"limit": 5},
            response={
                "results": [{"path": "Garden.md", "score": 0.91}],
                "query_info": {"query_time_ms": 12.5, "total_results": 1},
            },
        )

        mock_otel_logger.emit.assert_called_once()
        kwargs = mock_otel_logger.emit.call_args.kwargs
        attributes = kwargs["attributes"]
        assert attributes["mcp.tool.name"] == "search_notes"
        assert attributes["response.success"] is True
        assert attributes["response.result_count"] == 1
        assert attributes["response.top_score"] == 0.91
        assert attributes["query.param.limit"] == 5
        assert 'query="garden planning"' in kwargs["body"]
        assert "results=1" in kwargs["body"]

    @patch("src.services.telemetry.config")
    @patch("src.services.telemetry.set_logger_provider")
    def test_log_run_tool_with_error(self, mock_set_logger_provider, mock_config):
        """Test logging a failed processing run"""
        _enable_logging(mock_config)
        mock_otel_logger = MagicMock()

        service = TelemetryService()
        service.otel_logger = mock_otel_logger

        service.log_query(
            tool_name="process_vault",
            query=None,
            parameters={},
            error=RuntimeError("x" * 600),
        )

        kwargs = mock_otel_logger.emit.call_args.kwargs
        attributes = kwargs["attributes"]
        assert attributes["response.success"] is False
        assert attributes["error.type"] == "RuntimeError"
        assert len(attributes["error.message"]) == 503
        assert "FAILED" in kwargs["body"]

    @patch("src.services.telemetry.config")
    def test_run_tool_attributes(self, mock_config):
        """Test that run results are summarised as low-cardinality attributes"""
        mock_config.otel_logging_enabled = False
        mock_config.otel_tracing_enabled = False

        service = TelemetryService()
        attributes = service.build_attributes(
            "retry_failed_files",
            {},
            {"status": "complete", "processed": 3, "partial_success": True},
        )

        assert attributes["response.run_status"] == "complete"
        assert attributes["response.processed"] == 3
        assert attributes["response.partial_success"] is True

    @patch("src.services.telemetry.config")
    def test_find_similar_body_includes_path(self, mock_config):
        """Test that the source path goes into the log body, not the attributes"""
        mock_config.otel_logging_enabled = False
        mock_config.otel_tracing_enabled = False

        service = TelemetryService()
        parameters = {"path": "Projects/Plan.md", "limit": 10}
        body = service.build_body("find_similar_notes", None, parameters)
        attributes = service.build_attributes("find_similar_notes", parameters)

        assert "path=Projects/Plan.md" in body
        assert "Projects/Plan.md" not in attributes.values()

    @patch("src.services.telemetry.config")
    @patch("src.services.telemetry.set_logger_provider")
    def test_telemetry_errors_do_not_propagate(self, mock_set_logger_provider, mock_config):
        """Test that exporter failures are swallowed"""
        _enable_logging(mock_config)
        mock_otel_logger = MagicMock()
        mock_otel_logger.emit.side_effect = RuntimeError("exporter down")

        service = TelemetryService()
        service.otel_logger = mock_otel_logger

        service.log_query(tool_name="get_index_stats", query=None, parameters={})
