"""Command-line interface for llm-resilience."""

import asyncio
import json
import logging
import sys
from typing import Optional, Tuple

import click
import structlog

from .client import create_client
from .health import HealthChecker, HealthCheckConfig, HealthCheckStrategy
from .providers.base import Message
from .retry import RetryConfig, RetryStrategy, RetryStrategyType

STRATEGY_CHOICES = {
    "exponential": RetryStrategyType.EXPONENTIAL_BACKOFF,
    "linear": RetryStrategyType.LINEAR_BACKOFF,
    "fixed": RetryStrategyType.FIXED_DELAY,
}


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.ERROR
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


@click.group()
@click.version_option(version="0.1.0", prog_name="llm-resilience")
@click.option("--provider", "-p", type=click.Choice(["openai", "anthropic"]), default="openai",
              help="LLM provider to use")
@click.option("--model", "-m", help="Model to use")
@click.option("--api-key", "-k",
              help="API key (defaults to OPENAI_API_KEY or ANTHROPIC_API_KEY, per provider)")
@click.option("--no-retry", is_flag=True, help="Disable retry logic")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def cli(ctx: click.Context, provider: str, model: Optional[str], api_key: Optional[str],
        no_retry: bool, verbose: bool) -> None:
    """LLM client with retry, circuit breaker and endpoint failover."""
    ctx.ensure_object(dict)
    ctx.obj["provider"] = provider
    ctx.obj["model"] = model
    ctx.obj["api_key"] = api_key
    ctx.obj["retry_enabled"] = not no_retry
    ctx.obj["verbose"] = verbose
    _configure_logging(verbose)


def _fail(ctx: click.Context, error: Exception) -> None:
    if ctx.obj.get("verbose"):
        import traceback
        click.echo(traceback.format_exc(), err=True)
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@cli.command()
@click.argument("message")
@click.option("--system", "-s", help="System prompt")
@click.option("--endpoint", "-e", "endpoints", multiple=True,
              help="Base URL to fail over between (repeatable, most preferred first)")
@click.option("--max-tokens", "-t", type=int, default=1024, help="Maximum tokens in response")
@click.option("--temperature", type=float, default=0.7, help="Sampling temperature")
@click.option("--json-output", "-j", is_flag=True, help="Output as JSON")
@click.pass_context
def send(ctx: click.Context, message: str, system: Optional[str], endpoints: Tuple[str, ...],
         max_tokens: int, temperature: float, json_output: bool) -> None:
    """Send a single message and get a response.

    Example:
        llm-resilience send "What is 2+2?"
        llm-resilience -p anthropic send "Hello" -e https://a.example -e https://b.example
    """

    async def run():
        client = create_client(
            provider=ctx.obj["provider"],
            model=ctx.obj["model"],
            api_key=ctx.obj["api_key"],
            retry_enabled=ctx.obj["retry_enabled"],
            endpoints=list(endpoints) or None,
        )
        async with client:
            messages = []
            if system:
                messages.append(Message.system(system))
            messages.append(Message.user(message))
            return await client.complete(messages, max_tokens=max_tokens, temperature=temperature)

    try:
        response = asyncio.run(run())
    except Exception as e:
        _fail(ctx, e)
        return

    if json_output:
        output = {
            "content": response.content,
            "model": response.model,
            "provider": response.provider,
            "endpoint": response.endpoint,
            "finish_reason": response.finish_reason,
            "usage": response.usage,
        }
        click.echo(json.dumps(output, indent=2))
    else:
        click.echo(response.content)


@cli.command()
@click.option("--strategy", "strategy_name", type=click.Choice(list(STRATEGY_CHOICES)),
              default="exponential", help="Backoff curve")
@click.option("--attempts", "-n", type=int, default=5, help="Number of retries to show")
@click.option("--base-delay", type=float, default=1.0, help="Base delay in seconds")
@click.option("--max-delay", type=float, default=60.0, help="Delay cap in seconds")
@click.option("--multiplier", type=float, default=2.0, help="Exponential multiplier")
@click.option("--jitter/--no-jitter", default=False, help="Apply +/-10% jitter")
@click.option("--json-output", "-j", is_flag=True, help="Output as JSON")
@click.pass_context
def backoff(ctx: click.Context, strategy_name: str, attempts: int, base_delay: float, max_delay: float,
            multiplier: float, jitter: bool, json_output: bool) -> None:
    """Preview the delay schedule of a retry strategy.

    Example:
        llm-resilience backoff --strategy linear --base-delay 3 --max-delay 10
    """
    try:
        config = RetryConfig(
            max_attempts=attempts + 1,
            base_delay=base_delay,
            max_delay=max_delay,
            backoff_multiplier=multiplier,
            jitter_enabled=jitter,
        )
        strategy = RetryStrategy(STRATEGY_CHOICES[strategy_name], config)
    except ValueError as e:
        _fail(ctx, e)
        return

    delays = [strategy.calculate_delay(attempt) for attempt in range(1, attempts + 1)]

    if json_output:
        click.echo(json.dumps({"strategy": strategy_name, "delays": delays}, indent=2))
    else:
        for attempt, delay in enumerate(delays, start=1):
            click.echo(f"attempt {attempt}: {delay:.3f}s")


@cli.command()
@click.argument("urls", nargs=-1, required=True)
@click.option("--lightweight", is_flag=True, help="Probe with OPTIONS instead of HEAD")
@click.option("--timeout", type=float, default=5.0, help="Probe timeout in seconds")
@click.option("--json-output", "-j", is_flag=True, help="Output as JSON")
@click.pass_context
def health(ctx: click.Context, urls: Tuple[str, ...], lightweight: bool, timeout: float,
           json_output: bool) -> None:
    """Probe endpoint health.

    Example:
        llm-resilience health https://api.openai.com/v1 https://api.anthropic.com
    """
    strategy = HealthCheckStrategy.LIGHTWEIGHT_API if lightweight else HealthCheckStrategy.PING

    async def run():
        config = HealthCheckConfig(
            timeout=timeout,
            degraded_threshold=min(1.0, timeout),
            unhealthy_threshold=timeout,
            strategy=strategy,
        )
        async with HealthChecker(config) as checker:
            return await checker.check_endpoints(urls)

    try:
        results = asyncio.run(run())
    except Exception as e:
        _fail(ctx, e)
        return

    if json_output:
        output = [
            {
                "url": r.url,
                "health": r.health.value,
                "status_code": r.status_code,
                "response_time": r.response_time,
                "error": r.error,
            }
            for r in results
        ]
        click.echo(json.dumps(output, indent=2))
    else:
        for r in results:
            icon = "[OK]" if r.is_healthy else f"[{r.health.value.upper()}]"
            click.echo(f"{icon} {r.url} ({r.response_time * 1000:.0f} ms)")
            if r.error:
                click.echo(f"    Error: {r.error}")

    if not any(r.is_healthy for r in results):
        sys.exit(1)


def main() -> None:
    """Entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
