from contextlib import AsyncExitStack, asynccontextmanager
import logging
from typing import Sequence

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from chatloop.capabilities.mcp import connect_mcp_servers, load_mcp_server_configs
from chatloop.capabilities.registry import CapabilityRegistry
from chatloop.intent.router import PassthroughIntentRouter
from chatloop.llm.client import LLMClient
from chatloop.routes import router
from chatloop.session_manager import SessionManager
from chatloop.vars import (
    EXCLUDE_TOOLS,
    INCLUDE_TOOLS,
    MCP_CONFIG_PATH,
    MCP_CONNECT_TIMEOUT_SECONDS,
    MCP_SERVER_ARGS,
    MCP_SERVER_COMMAND,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    SERVICE_NAME,
)

logger = logging.getLogger("uvicorn.error")


class FilteringSpanExporter(SpanExporter):
    """Drops the per-chunk ASGI body spans that streaming responses produce."""

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracing() -> None:
    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    )
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=(OTLP_HEADERS.split(",") if OTLP_HEADERS else None),
        )
        trace.get_tracer_provider().add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )


async def build_registry(stack: AsyncExitStack) -> CapabilityRegistry:
    configs = load_mcp_server_configs(
        MCP_CONFIG_PATH, MCP_SERVER_COMMAND, MCP_SERVER_ARGS
    )
    capabilities = await connect_mcp_servers(
        stack, configs, MCP_CONNECT_TIMEOUT_SECONDS
    )
    return CapabilityRegistry(capabilities, include=INCLUDE_TOOLS, exclude=EXCLUDE_TOOLS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with AsyncExitStack() as stack:
        registry = await build_registry(stack)
        app.state.sessions = SessionManager(
            registry=registry,
            router=PassthroughIntentRouter(),
            backend=LLMClient(),
        )
        logger.info(f"[Server] {SERVICE_NAME} ready with {len(registry)} tools")
        yield
        app.state.sessions = None


configure_tracing()

app = FastAPI(title=SERVICE_NAME, lifespan=lifespan)
instrumentator = Instrumentator()
instrumentator.instrument(app).expose(app)

FastAPIInstrumentor.instrument_app(app)

# Add app_name to the metrics
app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})


@app.get("/health")
async def health():
    return {"status": "ok", "service": SERVICE_NAME}


app.include_router(router)
