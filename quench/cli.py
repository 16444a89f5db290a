"""Quench CLI - completions and datasets for fine-tuned models."""

import asyncio
import json
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from quench import __version__
from quench.config import QuenchConfig, validate_config
from quench.core.completion import CompletionService
from quench.core.errors import QuenchError, classify_error
from quench.finetuning.evaluator import FineTuneEvaluator
from quench.finetuning.importer import DatasetImporter, DatasetStore, parse_rows_to_import
from quench.finetuning.registry import FineTuneRegistry
from quench.finetuning.splits import EntryType
from quench.llm.completion_parser import format_message
from quench.llm.messages import ChatMessage, CompletionFailure, CompletionRequest
from quench.llm.router import InferenceRouter
from quench.llm.tokens import TiktokenCounter
from quench.logging import setup_logging
from quench.persistence.database import Database

console = Console()


def _database(config: QuenchConfig) -> Database:
    return Database(config.db_path)


def _registry(config: QuenchConfig) -> FineTuneRegistry:
    return FineTuneRegistry(_database(config))


def _fail(error: Exception):
    classified = classify_error(error)
    console.print(f"[red]✗ {classified.message}[/red]")
    if classified.suggestion:
        console.print(f"[dim]{classified.suggestion}[/dim]")
    raise SystemExit(1)


def _parse_message(value: str) -> ChatMessage:
    role, sep, content = value.partition(":")
    if not sep:
        raise click.BadParameter(f"expected ROLE:CONTENT, got {value!r}")
    try:
        return ChatMessage(role=role.strip(), content=content)
    except ValueError as e:
        raise click.BadParameter(str(e))


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(), help="Path to quench.toml")
@click.pass_context
def cli(ctx, config_path: Optional[str]):
    """Quench - completions and evaluation for fine-tuned models"""
    config = QuenchConfig.load(config_path)
    setup_logging(
        level=config.log_level,
        log_file=str(config.log_file) if config.log_file else None,
        json_format=config.log_json,
    )
    ctx.obj = config


@cli.command()
@click.argument("model")
@click.option("--message", "-m", "messages", multiple=True, help="Message as ROLE:CONTENT")
@click.option(
    "--file", "-f", "request_file", type=click.Path(exists=True),
    help="JSON request body with a messages list",
)
@click.option("--max-tokens", type=int, help="Maximum tokens to generate")
@click.option("--temperature", type=float, help="Sampling temperature")
@click.option("--json", "as_json", is_flag=True, help="Print the raw completion object")
@click.pass_obj
def complete(
    config: QuenchConfig,
    model: str,
    messages: tuple,
    request_file: Optional[str],
    max_tokens: Optional[int],
    temperature: Optional[float],
    as_json: bool,
):
    """Run a chat completion against a fine-tuned model.

    Examples:

        quench complete my-model -m "user:What's the weather in Paris?"

        quench complete quench:my-model -f request.json --json
    """
    if request_file:
        data = json.loads(Path(request_file).read_text())
        data["model"] = model
        request = CompletionRequest.from_dict(data)
    else:
        request = CompletionRequest(
            model=model, messages=[_parse_message(m) for m in messages]
        )
        request.max_tokens = config.default_max_tokens
        request.temperature = config.default_temperature

    if max_tokens is not None:
        request.max_tokens = max_tokens
    if temperature is not None:
        request.temperature = temperature

    if not request.messages:
        raise click.UsageError("Provide at least one --message or a --file")

    async def run():
        async with InferenceRouter(timeout=config.request_timeout_seconds) as router:
            service = CompletionService(
                _registry(config), router, TiktokenCounter(), model_prefix=config.model_prefix
            )
            return await service.complete(request)

    result = asyncio.run(run())

    if isinstance(result, CompletionFailure):
        if as_json:
            click.echo(json.dumps(result.to_dict()))
        console.print(f"[red]✗ {result.message}[/red]")
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    console.print(Panel(format_message(result.message), title=f"assistant ({model})"))
    console.print(
        f"[dim]{result.usage.prompt_tokens} prompt + {result.usage.completion_tokens} "
        f"completion tokens, {result.latency_ms:.0f}ms[/dim]"
    )


# Fine-tune commands
@cli.group()
def finetune():
    """Manage fine-tuned models and their inference endpoints."""
    pass


@finetune.command("create")
@click.argument("slug")
@click.option("--base-model", "-b", required=True, help="Base model of the fine-tune")
@click.option("--url", "urls", multiple=True, help="Inference endpoint URL")
@click.pass_obj
def finetune_create(config: QuenchConfig, slug: str, base_model: str, urls: tuple):
    """Register a fine-tuned model."""

    async def run():
        return await _registry(config).create_fine_tune(slug, base_model, list(urls))

    try:
        fine_tune = asyncio.run(run())
    except ValueError as e:
        _fail(e)

    console.print(f"[green]✓ Registered {fine_tune.slug}[/green] [dim]({fine_tune.id})[/dim]")
    if not fine_tune.inference_urls:
        console.print("[dim]Add an endpoint with: quench finetune add-url[/dim]")


@finetune.command("add-url")
@click.argument("slug")
@click.argument("url")
@click.pass_obj
def finetune_add_url(config: QuenchConfig, slug: str, url: str):
    """Add an inference endpoint to a fine-tuned model."""

    async def run():
        return await _registry(config).add_inference_url(slug, url)

    if not asyncio.run(run()):
        console.print(f"[red]✗ Fine-tune not found: {slug}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✓ Added {url} to {slug}[/green]")


@finetune.command("list")
@click.pass_obj
def finetune_list(config: QuenchConfig):
    """List fine-tuned models."""

    async def run():
        return await _registry(config).list_fine_tunes()

    fine_tunes = asyncio.run(run())
    if not fine_tunes:
        console.print("[yellow]No fine-tuned models found[/yellow]")
        console.print("[dim]Run 'quench finetune create' to register one[/dim]")
        return

    table = Table(title="Fine-tuned Models")
    table.add_column("Slug")
    table.add_column("Base Model")
    table.add_column("Endpoints")
    table.add_column("Created")

    for fine_tune in fine_tunes:
        table.add_row(
            fine_tune.slug,
            fine_tune.base_model,
            "\n".join(fine_tune.inference_urls) or "[dim]none[/dim]",
            fine_tune.created_at.strftime("%Y-%m-%d"),
        )

    console.print(table)


# Pruning rule commands
@cli.group()
def prune():
    """Manage pruning rules (text removed from inputs before templating)."""
    pass


@prune.command("add")
@click.argument("slug")
@click.argument("text")
@click.pass_obj
def prune_add(config: QuenchConfig, slug: str, text: str):
    """Add a pruning rule to a fine-tuned model."""

    async def run():
        registry = _registry(config)
        fine_tune = await registry.get_by_slug(slug)
        if fine_tune is None:
            return None
        return await registry.add_pruning_rule(fine_tune.id, text)

    try:
        rule = asyncio.run(run())
    except ValueError as e:
        _fail(e)

    if rule is None:
        console.print(f"[red]✗ Fine-tune not found: {slug}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✓ Added pruning rule {rule.id}[/green]")


@prune.command("list")
@click.argument("slug")
@click.pass_obj
def prune_list(config: QuenchConfig, slug: str):
    """List a model's pruning rules in the order they are applied."""

    async def run():
        registry = _registry(config)
        fine_tune = await registry.get_by_slug(slug)
        if fine_tune is None:
            return None
        return await registry.list_pruning_rules(fine_tune.id)

    rules = asyncio.run(run())
    if rules is None:
        console.print(f"[red]✗ Fine-tune not found: {slug}[/red]")
        raise SystemExit(1)
    if not rules:
        console.print("[yellow]No pruning rules[/yellow]")
        return

    table = Table(title=f"Pruning Rules ({slug})")
    table.add_column("ID", style="dim")
    table.add_column("Text")
    table.add_column("Created")
    for rule in rules:
        table.add_row(rule.id, repr(rule.text_to_match), rule.created_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@prune.command("delete")
@click.argument("rule_id")
@click.pass_obj
def prune_delete(config: QuenchConfig, rule_id: str):
    """Delete a pruning rule."""

    async def run():
        return await _registry(config).delete_pruning_rule(rule_id)

    if not asyncio.run(run()):
        console.print(f"[red]✗ Pruning rule not found: {rule_id}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✓ Deleted pruning rule {rule_id}[/green]")


# Dataset commands
@cli.group()
def dataset():
    """Create datasets and import rows with a train/test split."""
    pass


@dataset.command("create")
@click.argument("name")
@click.option("--ratio", type=float, help="Fraction of entries used for training")
@click.pass_obj
def dataset_create(config: QuenchConfig, name: str, ratio: Optional[float]):
    """Create a dataset."""

    async def run():
        return await DatasetStore(_database(config)).create_dataset(name, ratio)

    try:
        created = asyncio.run(run())
    except ValueError as e:
        _fail(e)
    console.print(f"[green]✓ Created dataset {created.name}[/green] [dim]({created.id})[/dim]")


@dataset.command("import")
@click.argument("dataset_id")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def dataset_import(config: QuenchConfig, dataset_id: str, file: str):
    """Import JSONL rows into a dataset.

    Each line is {"input": {"messages": [...], "functions": [...],
    "function_call": ...}, "output": {...}}.
    """

    async def on_progress(count: int):
        console.print(f"[dim]Prepared {count} rows...[/dim]")

    async def run():
        rows = parse_rows_to_import(Path(file).read_text())
        importer = DatasetImporter(
            DatasetStore(_database(config)),
            default_training_ratio=config.default_training_ratio,
        )
        return await importer.import_rows(
            dataset_id,
            rows,
            update_callback=on_progress,
            update_frequency=config.import_progress_every,
        )

    try:
        entries = asyncio.run(run())
    except QuenchError as e:
        _fail(e)

    train = sum(1 for e in entries if e.type == EntryType.TRAIN)
    console.print(
        f"[green]✓ Imported {len(entries)} rows[/green] "
        f"({train} train, {len(entries) - train} test)"
    )


@dataset.command("stats")
@click.argument("dataset_id")
@click.pass_obj
def dataset_stats(config: QuenchConfig, dataset_id: str):
    """Show a dataset's train/test counts."""

    async def run():
        store = DatasetStore(_database(config))
        found = await store.get_dataset(dataset_id)
        if found is None:
            return None, None
        return found, await store.count_entries(dataset_id)

    found, counts = asyncio.run(run())
    if found is None:
        console.print(f"[red]✗ Dataset not found: {dataset_id}[/red]")
        raise SystemExit(1)

    total = counts[EntryType.TRAIN] + counts[EntryType.TEST]
    ratio = found.training_ratio if found.training_ratio is not None else config.default_training_ratio
    console.print(f"[bold]{found.name}[/bold]")
    console.print(f"  Train: {counts[EntryType.TRAIN]}")
    console.print(f"  Test: {counts[EntryType.TEST]}")
    console.print(f"  Total: {total}")
    console.print(f"  Target training ratio: {ratio}")
    if total:
        console.print(f"  Actual training ratio: {counts[EntryType.TRAIN] / total:.3f}")


@cli.command()
@click.argument("slug")
@click.argument("dataset_id")
@click.option("--concurrency", type=int, help="Completions in flight")
@click.pass_obj
def evaluate(config: QuenchConfig, slug: str, dataset_id: str, concurrency: Optional[int]):
    """Run a fine-tune over a dataset's test entries."""

    async def run():
        database = _database(config)
        registry = FineTuneRegistry(database)
        async with InferenceRouter(timeout=config.request_timeout_seconds) as router:
            service = CompletionService(
                registry, router, TiktokenCounter(), model_prefix=config.model_prefix
            )
            evaluator = FineTuneEvaluator(
                service,
                registry,
                DatasetStore(database),
                concurrency=concurrency or config.eval_concurrency,
                timeout=config.eval_timeout_seconds,
            )
            return await evaluator.evaluate(slug, dataset_id)

    with console.status("[bold green]Evaluating..."):
        try:
            summary = asyncio.run(run())
        except QuenchError as e:
            _fail(e)

    table = Table(title=f"Evaluation ({slug})")
    table.add_column("Entry", style="dim")
    table.add_column("Output")
    table.add_column("Score")
    for result in summary.results:
        if result.error_message:
            output = f"[red]{result.error_message}[/red]"
        else:
            output = format_message(ChatMessage.from_dict(result.output))
        score = "-" if result.score is None else f"{result.score:.0%}"
        table.add_row(result.dataset_entry_id[:8], output, score)
    console.print(table)

    console.print("\n[bold]Summary:[/bold]")
    console.print(f"  Completed: {summary.completed}")
    console.print(f"  Failed: {summary.failed}")
    console.print(f"  Average score: {summary.avg_score:.3f}")


@cli.command()
@click.pass_obj
def doctor(config: QuenchConfig):
    """Check the configuration."""
    console.print(f"Data directory: {config.data_dir}")
    console.print(f"Database: {config.db_path}")
    warnings = validate_config(config)
    if not warnings:
        console.print("[green]✓ Configuration OK[/green]")
        return
    for warning in warnings:
        console.print(f"[yellow]! {warning}[/yellow]")


def main():
    cli()


if __name__ == "__main__":
    main()
