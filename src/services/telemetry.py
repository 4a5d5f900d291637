"""OpenTelemetry logging and tracing for index tool calls"""

import json
import logging
from datetime import UTC, datetime
from typing import Any

from opentelemetry import trace
from opentelemetry._logs import SeverityNumber, set_logger_provider
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from src.config import config

logger = logging.getLogger(__name__)

SEARCH_TOOLS = ("search_notes", "find_similar_notes")
RUN_TOOLS = ("process_vault", "retry_failed_files", "force_refresh")
MAX_LOGGED_QUERY_LENGTH = 200
MAX_ERROR_MESSAGE_LENGTH = 500


def _signal_endpoint(signal: str) -> str:
    endpoint = config.otel_endpoint
    suffix = f"/v1/{signal}"
    if endpoint.endswith(suffix):
        return endpoint
    return f"{endpoint.rstrip('/')}{suffix}"


def _resource() -> Resource:
    return Resource(
        attributes={
            SERVICE_NAME: config.otel_service_name,
            SERVICE_VERSION: config.otel_service_version,
        }
    )


class TelemetryService:
    """Emit one OpenTelemetry log record per tool call"""

    def __init__(self):
        self.logging_enabled = config.otel_logging_enabled
        self.tracing_enabled = config.otel_tracing_enabled
        self.logger_provider = None
        self.tracer_provider = None
        self.otel_logger = None

        if self.logging_enabled:
            try:
                self._initialize_logging()
            except Exception as e:
                logger.warning(f"Failed to initialize OTel logging: {e}. Logging disabled.")
                self.logging_enabled = False

        if self.tracing_enabled:
            try:
                self._initialize_tracing()
            except Exception as e:
                logger.warning(f"Failed to initialize OTel tracing: {e}. Tracing disabled.")
                self.tracing_enabled = False

    def _initialize_logging(self) -> None:
        """Initialize OpenTelemetry logging with OTLP log exporter"""
        self.logger_provider = LoggerProvider(resource=_resource())

        log_endpoint = _signal_endpoint("logs")
        self.logger_provider.add_log_record_processor(
            BatchLogRecordProcessor(OTLPLogExporter(endpoint=log_endpoint))
        )
        set_logger_provider(self.logger_provider)
        self.otel_logger = self.logger_provider.get_logger(__name__)

        logger.info(f"OpenTelemetry logging initialized with endpoint: {log_endpoint}")

    def _initialize_tracing(self) -> None:
        """Initialize OpenTelemetry tracing with OTLP trace exporter"""
        self.tracer_provider = TracerProvider(resource=_resource())

        trace_endpoint = _signal_endpoint("traces")
        self.tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=trace_endpoint))
        )
        trace.set_tracer_provider(self.tracer_provider)

        logger.info(f"OpenTelemetry tracing initialized with endpoint: {trace_endpoint}")

    def build_attributes(
        self,
        tool_name: str,
        parameters: dict[str, Any],
        response: dict[str, Any] | None = None,
        error: Exception | None = None,
    ) -> dict[str, str | int | float | bool]:
        """
        Low-cardinality attributes describing a tool call

        Args:
            tool_name: Name of the MCP tool
            parameters: Tool parameters
            response: Serialized tool response, if the call succeeded
            error: Error raised by the call, if any

        Returns:
            dict: Attribute map for the log record
        """
        attributes: dict[str, str | int | float | bool] = {
            "mcp.tool.name": tool_name,
            "timestamp": datetime.now(UTC).isoformat(),
            "response.success": error is None,
        }

        if parameters.get("limit") is not None:
            attributes["query.param.limit"] = int(parameters["limit"])

        if response:
            attributes["response.size_bytes"] = len(json.dumps(response, default=str))

            if tool_name in SEARCH_TOOLS:
                results = response.get("results", [])
                attributes["response.result_count"] = len(results)
                if results and results[0].get("score") is not None:
                    attributes["response.top_score"] = float(results[0]["score"])

                query_info = response.get("query_info", {})
                if "query_time_ms" in query_info:
                    attributes["response.query_time_ms"] = float(query_info["query_time_ms"])

                if config.otel_log_full_results:
                    attributes["response.results_json"] = json.dumps(results, default=str)

            elif tool_name in RUN_TOOLS:
                if response.get("status") is not None:
                    attributes["response.run_status"] = str(response["status"])
                attributes["response.processed"] = int(response.get("processed") or 0)
                attributes["response.partial_success"] = bool(response.get("partial_success"))

            elif tool_name == "get_index_stats":
                stats = response.get("stats", {})
                for key in ("total", "processed", "needs_processing", "failed"):
                    if key in stats:
                        attributes[f"response.stats.{key}"] = int(stats[key])

            elif tool_name == "list_pending_files":
                attributes["response.pending_count"] = len(response.get("files", []))

        if error:
            attributes["error.type"] = type(error).__name__
            error_message = str(error)
            if len(error_message) > MAX_ERROR_MESSAGE_LENGTH:
                error_message = error_message[:MAX_ERROR_MESSAGE_LENGTH] + "..."
            attributes["error.message"] = error_message

        return attributes

    def build_body(
        self,
        tool_name: str,
        query: str | None,
        parameters: dict[str, Any],
        response: dict[str, Any] | None = None,
        error: Exception | None = None,
    ) -> str:
        """Log body carrying the high-cardinality parts of a call"""
        parts = [f"[{tool_name}]", "FAILED" if error else "SUCCESS"]

        if query:
            truncated = (
                query
                if len(query) <= MAX_LOGGED_QUERY_LENGTH
                else query[:MAX_LOGGED_QUERY_LENGTH] + "..."
            )
            parts.append(f'query="{truncated}"')

        if parameters.get("path"):
            parts.append(f"path={parameters['path']}")

        if response and tool_name in SEARCH_TOOLS:
            query_time = response.get("query_info", {}).get("query_time_ms", 0)
            parts.append(f"results={len(response.get('results', []))} time={query_time:.1f}ms")
        elif response and tool_name in RUN_TOOLS:
            parts.append(f"status={response.get('status')} processed={response.get('processed', 0)}")

        if error:
            parts.append(f"error={type(error).__name__}")

        return " ".join(parts)

    def log_query(
        self,
        tool_name: str,
        query: str | None,
        parameters: dict[str, Any],
        response: dict[str, Any] | None = None,
        error: Exception | None = None,
    ) -> None:
        """
        Log a tool call and its outcome to OpenTelemetry

        Args:
            tool_name: Name of the MCP tool being called
            query: Query text for search tools, otherwise None
            parameters: All parameters passed to the tool
            response: The response data (if successful)
            error: The error (if failed)
        """
        if not self.logging_enabled or not self.otel_logger:
            return

        try:
            attributes = self.build_attributes(tool_name, parameters, response, error)
            if query and config.otel_log_full_results:
                attributes["query.full_text"] = query

            severity = logging.ERROR if error else logging.INFO
            self.otel_logger.emit(
                body=self.build_body(tool_name, query, parameters, response, error),
                severity_number=SeverityNumber(self._severity_to_number(severity)),
                attributes=attributes,
                timestamp=int(datetime.now(UTC).timestamp() * 1e9),
            )
        except Exception as e:
            logger.warning(f"Failed to log telemetry: {e}")

    def _severity_to_number(self, level: int) -> int:
        """Convert Python logging level to OpenTelemetry severity number"""
        if level >= logging.CRITICAL:
            return 21
        elif level >= logging.ERROR:
            return 17
        elif level >= logging.WARNING:
            return 13
        elif level >= logging.INFO:
            return 9
        else:
            return 5


_telemetry_service: TelemetryService | None = None
_instrumentation_initialized = False


def _ensure_instrumentation_initialized() -> None:
    """Instrument httpx before any provider client is created"""
    global _instrumentation_initialized
    if not _instrumentation_initialized and config.otel_tracing_enabled:
        try:
            HTTPXClientInstrumentor().instrument()
            _instrumentation_initialized = True
            logger.info("HTTP request tracing instrumentation initialized")
        except Exception as e:
            logger.warning(f"Failed to initialize HTTP tracing instrumentation: {e}")


def get_telemetry_service() -> TelemetryService:
    """Get or create the global telemetry service instance"""
    global _telemetry_service
    _ensure_instrumentation_initialized()
    if _telemetry_service is None:
        _telemetry_service = TelemetryService()
    return _telemetry_service
