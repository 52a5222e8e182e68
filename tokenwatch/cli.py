"""CLI tool for tokenWatch.

Commands:
- serve: Run the monitoring proxy in front of an upstream API
- estimate: Print a token estimate for a text or JSON conversation file
- calibrate: Compare the heuristic counter against a real tokenizer
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from tokenwatch.config import (
    DEFAULT_CONTEXT_LIMIT,
    DisconnectPolicy,
    EstimatorConfig,
    EstimatorStrategy,
    ProxyConfig,
    load_model_config,
)
from tokenwatch.estimator import TokenEstimator
from tokenwatch.logs import configure_logging
from tokenwatch.token_counter import count_tokens_tiktoken, serialize_conversation


LOG_FILE = "tokenwatch.log"
COOKIE_ENV = "TOKENWATCH_COOKIE"


def read_input(path: str) -> Any:
    """Read a file as a JSON conversation, falling back to plain text.

    A JSON object with a ``messages`` list yields that list.
    """
    text = Path(path).read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except ValueError:
        return text
    if isinstance(data, dict) and isinstance(data.get("messages"), list):
        return data["messages"]
    return data


def build_proxy_config(args: argparse.Namespace) -> ProxyConfig:
    """Build the proxy configuration from parsed arguments and environment."""
    context_limit = args.context_limit
    if context_limit is None:
        if args.model_config:
            context_limit = int(load_model_config(args.model_config)["context_limit"])
        else:
            context_limit = DEFAULT_CONTEXT_LIMIT

    headers = {}
    cookie = os.environ.get(COOKIE_ENV)
    if cookie:
        headers["cookie"] = cookie

    return ProxyConfig(
        upstream_base_url=args.upstream,
        host=args.host,
        port=args.port,
        context_limit=context_limit,
        alert_threshold=args.threshold,
        log_dir=Path(args.log_dir) if args.log_dir else None,
        disconnect_policy=DisconnectPolicy(args.disconnect_policy),
        verify_tls=not args.insecure,
        upstream_headers=headers,
        estimator=EstimatorConfig(
            strategy=EstimatorStrategy(args.strategy),
            context_window=context_limit,
        ),
    )


def create_summary_model(name: str | None):
    """Create the summarization model, if one was requested.

    Raises:
        RuntimeError: If a model is requested but no API key is set.
    """
    if not name:
        return None
    if not os.environ.get("OPENAI_API_KEY"):
        raise RuntimeError(
            "No API key found. Please set OPENAI_API_KEY to use --summary-model."
        )

    from openai import AsyncOpenAI
    from tokenwatch.backends.openai import OpenAISummaryModel

    return OpenAISummaryModel(AsyncOpenAI(), model=name)


def run_serve(args: argparse.Namespace) -> None:
    """Run the proxy server."""
    import uvicorn
    from tokenwatch.proxy import create_app

    config = build_proxy_config(args)
    log_file = config.log_dir / LOG_FILE if config.log_dir else None
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, log_file)

    try:
        summary_model = create_summary_model(args.summary_model)
    except RuntimeError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("=" * 60)
    print("tokenWatch proxy")
    print("=" * 60)
    print(f"  Listening on:  http://{config.host}:{config.port}")
    print(f"  Upstream:      {config.upstream_base_url}")
    print(f"  Context limit: {config.context_limit:,} tokens")
    print(f"  Threshold:     {config.alert_threshold * 100:.0f}%")
    print(f"  Strategy:      {config.estimator.strategy.value}")
    if log_file:
        print(f"  Log file:      {log_file}")
    print()

    app = create_app(config, summary_model=summary_model)
    uvicorn.run(app, host=config.host, port=config.port, log_level="warning")


def run_estimate(args: argparse.Namespace) -> None:
    """Print a token estimate for a file."""
    estimator = TokenEstimator(EstimatorConfig(
        strategy=EstimatorStrategy(args.strategy),
        context_window=args.context_window,
    ))
    estimate = estimator.estimate(read_input(args.file))
    print(json.dumps(estimate.to_dict(), indent=2))


def run_calibrate(args: argparse.Namespace) -> None:
    """Feed heuristic vs. tiktoken counts into a fresh estimator and report."""
    estimator = TokenEstimator(EstimatorConfig(strategy=EstimatorStrategy.ADAPTIVE))

    print(f"{'file':<40} {'heuristic':>10} {'reference':>10} {'error':>8}")
    print("-" * 71)
    for path in args.files:
        content = read_input(path)
        text = serialize_conversation(content)
        heuristic = estimator.count(text)
        reference = count_tokens_tiktoken(text, args.model)
        sample = estimator.feedback(heuristic, reference)
        error = f"{sample.relative_error * 100:.1f}%" if sample else "n/a"
        print(f"{path[-40:]:<40} {heuristic:>10,} {reference:>10,} {error:>8}")

    accuracy = estimator.accuracy()
    print()
    print(f"Samples:    {accuracy.samples}")
    if accuracy.mean_absolute_percent_error is not None:
        print(f"MAPE:       {accuracy.mean_absolute_percent_error:.1f}%")
    print(f"Confidence: {accuracy.confidence:.2f}")
    print(f"Threshold:  {estimator.current_threshold:.3f}")


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="tokenwatch",
        description="Token usage monitoring proxy with adaptive compaction thresholds",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    strategies = [s.value for s in EstimatorStrategy]

    serve = subparsers.add_parser("serve", help="Run the monitoring proxy")
    serve.add_argument(
        "--upstream",
        type=str,
        default=os.environ.get("TOKENWATCH_UPSTREAM", "https://api.openai.com"),
        help="Base URL of the upstream API (default: $TOKENWATCH_UPSTREAM or https://api.openai.com)",
    )
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Interface to listen on")
    serve.add_argument("--port", type=int, default=10347, help="Port to listen on (default: 10347)")
    serve.add_argument(
        "--context-limit",
        type=int,
        default=None,
        help="Context window of the upstream model in tokens (default: from --model-config or 262144)",
    )
    serve.add_argument(
        "--model-config",
        type=str,
        default=None,
        help='JSON file with {"current_model": {"context_limit": ...}}',
    )
    serve.add_argument(
        "--threshold",
        type=float,
        default=0.8,
        help="Fraction of the context window that raises an ALERT (default: 0.8)",
    )
    serve.add_argument("--strategy", choices=strategies, default="adaptive", help="Estimation strategy")
    serve.add_argument("--log-dir", type=str, default=None, help="Directory for log, usage and response files")
    serve.add_argument(
        "--disconnect-policy",
        choices=[p.value for p in DisconnectPolicy],
        default="drain",
        help="What to do with upstream streams when the client disconnects (default: drain)",
    )
    serve.add_argument("--insecure", action="store_true", help="Skip upstream TLS verification")
    serve.add_argument(
        "--summary-model",
        type=str,
        default=None,
        help="OpenAI model used by the compaction routes (default: local fallback summaries)",
    )
    serve.add_argument("--verbose", action="store_true", help="Log debug events")
    serve.set_defaults(func=run_serve)

    estimate = subparsers.add_parser("estimate", help="Estimate tokens for a file")
    estimate.add_argument("file", type=str, help="Text file or JSON conversation")
    estimate.add_argument("--strategy", choices=strategies, default="static", help="Estimation strategy")
    estimate.add_argument(
        "--context-window",
        type=int,
        default=1_000_000,
        help="Context window the threshold applies to (default: 1000000)",
    )
    estimate.set_defaults(func=run_estimate)

    calibrate = subparsers.add_parser("calibrate", help="Compare the heuristic against tiktoken")
    calibrate.add_argument("files", nargs="+", help="Text files or JSON conversations")
    calibrate.add_argument("--model", type=str, default="gpt-4", help="Model whose encoding to use")
    calibrate.set_defaults(func=run_calibrate)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
