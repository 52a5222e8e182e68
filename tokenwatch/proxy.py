"""Monitoring proxy between a client and an upstream LLM API.

For every request the proxy:

1. Estimates the token footprint of the conversation before forwarding
2. Asks for usage accounting on streamed chat completions
3. Relays the response (streamed chunks are forwarded as they arrive)
4. Extracts content and usage, then feeds the estimator, the session
   tracker, the usage bridge and the response log

Failures inside steps 1 and 4 are logged and never affect what the client
receives. Only malformed request bodies (400) and unreachable upstreams
(502) are reported to the client.
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Coroutine, Mapping

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from tokenwatch.backends.base import SummaryModel
from tokenwatch.compaction import CompactionEngine
from tokenwatch.config import DisconnectPolicy, ProxyConfig
from tokenwatch.errors import RequestParseError, ResponseParseError, UpstreamTransportError
from tokenwatch.estimator import TokenEstimate, TokenEstimator
from tokenwatch.storage.base import ResponseLog, UsageSink, response_entry, usage_snapshot
from tokenwatch.storage.files import file_sinks
from tokenwatch.storage.memory import MemoryResponseLog, MemoryUsageSink
from tokenwatch.streaming import Extraction, StreamRelay, extract_from_json, inject_usage_option
from tokenwatch.usage import SessionUsageTracker


logger = logging.getLogger(__name__)

# Headers that describe a single hop and are never copied across the proxy
HOP_BY_HOP = frozenset({
    "host",
    "connection",
    "keep-alive",
    "content-length",
    "transfer-encoding",
    "accept-encoding",
    "content-encoding",
    "upgrade",
})

EVENT_STREAM = "text/event-stream"
DEFAULT_SESSION = "default"


class RequestPhase(str, Enum):
    RECEIVING_REQUEST = "receiving_request"
    FORWARDING = "forwarding"
    STREAMING_RESPONSE = "streaming_response"
    BUFFERED_RESPONSE = "buffered_response"
    DONE = "done"


@dataclass
class Exchange:
    """State of a single proxied request."""
    request_id: str
    method: str
    path: str
    session_id: str = DEFAULT_SESSION
    streaming: bool = False
    estimate: TokenEstimate | None = None
    request_num: int = 0
    phase: RequestPhase = RequestPhase.RECEIVING_REQUEST

    def advance(self, phase: RequestPhase) -> None:
        self.phase = phase
        logger.debug(
            "Request phase changed",
            extra={"data": {"request_id": self.request_id, "phase": phase.value}},
        )


def _session_id(body: Mapping[str, Any]) -> str:
    session = body.get("session_id") or body.get("sessionId")
    return str(session) if session else DEFAULT_SESSION


class TokenWatchProxy:
    """Relays requests upstream while observing token usage.

    Owns the long-lived state shared by all requests: the estimator (and
    its feedback ring), the compaction engine, the per-session usage
    tracker and the sinks.

    Example:
        >>> proxy = TokenWatchProxy(ProxyConfig(upstream_base_url="https://api.example.com"))
        >>> app = create_app(proxy=proxy)
    """

    def __init__(
        self,
        config: ProxyConfig | None = None,
        estimator: TokenEstimator | None = None,
        usage_sink: UsageSink | None = None,
        response_log: ResponseLog | None = None,
        summary_model: SummaryModel | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the proxy.

        Args:
            config: Proxy configuration. Uses defaults if None.
            estimator: Estimator to use. Built from ``config.estimator`` if None.
            usage_sink: Usage bridge sink. File or memory sink by default,
                        depending on ``config.log_dir``.
            response_log: Response log sink, chosen like ``usage_sink``.
            summary_model: Model used by the compaction routes (fallback
                           summaries are used when None).
            http_client: Client for upstream calls. Created on demand if None.
        """
        self._config = config or ProxyConfig()
        self.estimator = estimator or TokenEstimator(self._config.estimator)
        self.engine = CompactionEngine(self._config.compaction, estimator=self.estimator)
        self.tracker = SessionUsageTracker(self._config.context_limit, self._config.alert_threshold)
        self.summary_model = summary_model

        if self._config.log_dir is not None:
            default_sink, default_log = file_sinks(self._config.log_dir)
        else:
            default_sink, default_log = MemoryUsageSink(), MemoryResponseLog()
        self.usage_sink = usage_sink or default_sink
        self.response_log = response_log or default_log

        self._client = http_client
        self._owns_client = http_client is None
        self._tasks: set[asyncio.Task] = set()

        self.request_count = 0
        self.tokens = {"input": 0, "output": 0}

    @property
    def config(self) -> ProxyConfig:
        return self._config

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout),
                verify=self._config.verify_tls,
            )
        return self._client

    async def startup(self) -> None:
        _ = self.client
        logger.info(
            "Proxy started",
            extra={"data": {
                "upstream": self._config.upstream_base_url,
                "context_limit": self._config.context_limit,
                "strategy": self.estimator.strategy_name,
            }},
        )

    async def shutdown(self) -> None:
        await self.join()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Proxy stopped", extra={"data": {"requests": self.request_count}})

    async def join(self) -> None:
        """Wait for all background stream work to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # --- Request handling ---

    async def handle(self, request: Request) -> Response:
        """Proxy one request upstream."""
        exchange = Exchange(
            request_id=uuid.uuid4().hex[:8],
            method=request.method,
            path=request.url.path,
        )
        raw = await request.body()

        try:
            content = self._prepare(exchange, request, raw)
        except RequestParseError as e:
            logger.warning(
                "Rejected malformed request",
                extra={"data": {"request_id": exchange.request_id, "error": str(e)}},
            )
            return JSONResponse({"error": "Bad request", "message": str(e)}, status_code=400)

        self.request_count += 1
        exchange.request_num = self.request_count
        exchange.advance(RequestPhase.FORWARDING)

        try:
            upstream = await self._send(request, content)
            if EVENT_STREAM in upstream.headers.get("content-type", ""):
                return self._relay_stream(exchange, upstream)
            return await self._relay_buffered(exchange, upstream)
        except UpstreamTransportError as e:
            logger.error(
                "Proxy request failed",
                extra={"data": {"request_id": exchange.request_id, "error": str(e)}},
            )
            exchange.advance(RequestPhase.DONE)
            return PlainTextResponse(f"Bad Gateway: {e}", status_code=502)

    def _prepare(self, exchange: Exchange, request: Request, raw: bytes) -> bytes:
        """Parse the request body, estimate it and inject stream options.

        Returns:
            The body to forward upstream.

        Raises:
            RequestParseError: If a JSON body cannot be decoded.
        """
        is_completion = exchange.path.endswith(self._config.completions_path)
        is_json = "json" in request.headers.get("content-type", "")
        if not raw or not (is_completion or is_json):
            return raw

        try:
            body = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise RequestParseError(f"invalid JSON body: {e}") from e
        if not isinstance(body, dict):
            return raw

        exchange.session_id = _session_id(body)
        exchange.streaming = body.get("stream") is True

        messages = body.get("messages")
        if isinstance(messages, list):
            exchange.estimate = self._estimate(exchange, messages)

        if is_completion and exchange.streaming:
            body = inject_usage_option(body)
            raw = json.dumps(body, ensure_ascii=False).encode("utf-8")

        logger.debug(
            "Request intercepted",
            extra={"data": {
                "request_id": exchange.request_id,
                "streaming": exchange.streaming,
                "has_stream_options": "stream_options" in body,
            }},
        )
        return raw

    def _estimate(self, exchange: Exchange, messages: list[Any]) -> TokenEstimate:
        estimate = self.estimator.estimate(messages)
        logger.info(
            "Estimated tokens",
            extra={"data": {
                "request_id": exchange.request_id,
                "tokens": estimate.tokens,
                "threshold": f"{estimate.threshold * 100:.1f}%",
                "confidence": round(estimate.confidence, 3),
            }},
        )
        if estimate.should_compact:
            logger.warning(
                "Compaction recommended",
                extra={"data": {"request_id": exchange.request_id, "reason": estimate.reason}},
            )
        return estimate

    def _upstream_headers(self, request: Request) -> dict[str, str]:
        headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_BY_HOP}
        headers["accept-encoding"] = "identity"
        headers.update(self._config.upstream_headers)
        return headers

    @staticmethod
    def _response_headers(upstream: httpx.Response) -> dict[str, str]:
        return {k: v for k, v in upstream.headers.items() if k.lower() not in HOP_BY_HOP}

    async def _send(self, request: Request, content: bytes) -> httpx.Response:
        url = self._config.upstream_base_url + request.url.path
        if request.url.query:
            url += "?" + request.url.query

        upstream_request = self.client.build_request(
            request.method,
            url,
            headers=self._upstream_headers(request),
            content=content,
        )
        try:
            return await self.client.send(upstream_request, stream=True)
        except httpx.TransportError as e:
            raise UpstreamTransportError(str(e) or type(e).__name__) from e

    # --- Response branches ---

    def _relay_stream(self, exchange: Exchange, upstream: httpx.Response) -> StreamingResponse:
        exchange.advance(RequestPhase.STREAMING_RESPONSE)
        relay = StreamRelay(upstream.aiter_bytes())
        pump = self._spawn(self._pump(exchange, upstream, relay))
        policy = self._config.disconnect_policy

        async def body():
            delivered = False
            try:
                async for chunk in relay.forward():
                    yield chunk
                delivered = True
            finally:
                if not delivered and not pump.done():
                    logger.info(
                        "Client disconnected mid-stream",
                        extra={"data": {"request_id": exchange.request_id, "policy": policy.value}},
                    )
                    if policy == DisconnectPolicy.CANCEL:
                        pump.cancel()

        return StreamingResponse(
            body(),
            status_code=upstream.status_code,
            headers=self._response_headers(upstream),
        )

    async def _pump(self, exchange: Exchange, upstream: httpx.Response, relay: StreamRelay) -> None:
        try:
            await relay.pump()
        except asyncio.CancelledError:
            logger.info(
                "Upstream stream cancelled, partial response discarded",
                extra={"data": {"request_id": exchange.request_id, "bytes": relay.size}},
            )
            raise
        except httpx.HTTPError as e:
            logger.error(
                "Upstream stream failed",
                extra={"data": {"request_id": exchange.request_id, "error": str(e)}},
            )
            return
        finally:
            await upstream.aclose()

        extraction = relay.extract()
        if extraction.usage is None:
            logger.warning(
                "No usage in stream (upstream may not support stream_options.include_usage)",
                extra={"data": {"request_id": exchange.request_id}},
            )
        self._analyze(exchange, extraction)

    async def _relay_buffered(self, exchange: Exchange, upstream: httpx.Response) -> Response:
        exchange.advance(RequestPhase.BUFFERED_RESPONSE)
        try:
            body = await upstream.aread()
        except httpx.HTTPError as e:
            raise UpstreamTransportError(str(e) or type(e).__name__) from e
        finally:
            await upstream.aclose()

        if body:
            try:
                extraction = extract_from_json(body)
            except ResponseParseError as e:
                logger.warning(
                    "Failed to parse upstream response",
                    extra={"data": {"request_id": exchange.request_id, "error": str(e)}},
                )
            else:
                self._analyze(exchange, extraction)
        exchange.advance(RequestPhase.DONE)

        return Response(
            content=body,
            status_code=upstream.status_code,
            headers=self._response_headers(upstream),
        )

    def _analyze(self, exchange: Exchange, extraction: Extraction) -> None:
        """Record an extraction; failures are logged and never reach the client."""
        try:
            self._record(exchange, extraction)
        except Exception as e:
            logger.warning(
                "Response analysis failed",
                extra={"data": {"request_id": exchange.request_id, "error": f"{type(e).__name__}: {e}"}},
            )
            exchange.advance(RequestPhase.DONE)

    def _record(self, exchange: Exchange, extraction: Extraction) -> None:
        """Hand an extraction to the response log, tracker and feedback loop."""
        usage = extraction.usage

        if extraction.has_text:
            self.response_log.append(response_entry(
                extraction.content, extraction.reasoning, usage, exchange.request_num,
            ))

        if usage:
            self.tracker.track(exchange.session_id, usage)
            record = self.tracker.get(exchange.session_id)
            self.tokens["input"] += record.prompt_tokens
            self.tokens["output"] += record.completion_tokens
            self.usage_sink.write(usage_snapshot(usage, self._config.context_limit, self.request_count))
            if exchange.estimate is not None:
                self.estimator.feedback(exchange.estimate.tokens, usage.get("total_tokens"))

        exchange.advance(RequestPhase.DONE)

    # --- Statistics ---

    def stats(self) -> dict[str, Any]:
        """Snapshot for the statistics reader."""
        return {
            "requests": self.request_count,
            "tokens": dict(self.tokens),
            "estimator": {
                "strategy": self.estimator.strategy_name,
                "threshold": self.estimator.current_threshold,
                "accuracy": self.estimator.accuracy().to_dict(),
            },
            "compaction": {
                "mode": self.engine.config.mode.value,
                "threshold": self.engine.threshold(),
                **self.engine.stats().to_dict(),
            },
            "sessions": {sid: record.to_dict() for sid, record in self.tracker.sessions().items()},
        }


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise RequestParseError(f"invalid JSON body: {e}") from e
    if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
        raise RequestParseError("body must be an object with a 'messages' list")
    return body


def create_app(
    config: ProxyConfig | None = None,
    summary_model: SummaryModel | None = None,
    proxy: TokenWatchProxy | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Proxy configuration (ignored when ``proxy`` is given).
        summary_model: Model for the compaction routes (ignored when ``proxy`` is given).
        proxy: A pre-built proxy, e.g. with injected sinks or HTTP client.

    Returns:
        The application. The proxy is available as ``app.state.proxy``.
    """
    proxy = proxy or TokenWatchProxy(config, summary_model=summary_model)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await proxy.startup()
        yield
        await proxy.shutdown()

    app = FastAPI(title="tokenWatch", lifespan=lifespan)
    app.state.proxy = proxy

    @app.exception_handler(RequestParseError)
    async def bad_request(request: Request, exc: RequestParseError):
        return JSONResponse({"error": "Bad request", "message": str(exc)}, status_code=400)

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/api/stats")
    async def stats():
        return proxy.stats()

    @app.post("/api/compaction/check")
    async def compaction_check(request: Request):
        body = await _json_body(request)
        window = body.get("context_window") or proxy.config.context_limit
        if not isinstance(window, int) or window <= 0:
            raise RequestParseError("context_window must be a positive integer")
        decision = proxy.engine.should_compact(body["messages"], context_window=window)
        return decision.to_dict()

    @app.post("/api/compaction/run")
    async def compaction_run(request: Request):
        body = await _json_body(request)
        messages = await proxy.engine.compact(body["messages"], proxy.summary_model)
        return {"messages": messages, "stats": proxy.engine.stats().to_dict()}

    @app.api_route(
        "/{path:path}",
        methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
        include_in_schema=False,
    )
    async def passthrough(request: Request):
        return await proxy.handle(request)

    return app
