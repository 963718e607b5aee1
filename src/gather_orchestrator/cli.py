"""CLI for the gather conversation engine.

Provides an interactive chat loop against in-memory stores and a one-shot
step generator.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from .ai.retry_client import RetryClient
from .collaborators import InMemoryMemoryStore, InMemoryPreferenceStore, InMemoryTaskStore
from .config import GatherConfig, load_config
from .conversation.breakdown import TaskBreakdownGenerator
from .conversation.card import (
    CardState,
    ErrorCard,
    IdleCard,
    MessageCard,
    QuestionCard,
    StreamingCard,
    TaskCreatedCard,
    ThinkingCard,
)
from .conversation.orchestrator import ConversationOrchestrator
from .errors import ConfigError
from .models import StepDraft

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

CHAT_HELP = """Commands:
  <number>      pick an option or quick reply
  /back         previous clarifying question
  /tasks        list tasks
  /focus <n>    open task n from /tasks
  /home         leave the current task
  /dismiss      close the card and forget the conversation
  /quit         exit"""


def format_step(index: int, step: StepDraft) -> str:
    mark = "x" if step.done else " "
    line = f"  {index}. [{mark}] {step.text}"
    if step.time:
        line += f" ({step.time})"
    return line


def render_card(state: CardState) -> str:
    """Plain-text rendering of a card state."""
    if isinstance(state, IdleCard):
        return ""
    if isinstance(state, ThinkingCard):
        return state.status or "Thinking..."
    if isinstance(state, StreamingCard):
        return state.partial_text

    lines: list[str] = []
    if isinstance(state, QuestionCard):
        prefix = f"({state.index + 1}/{state.total}) " if state.total > 1 else ""
        lines.append(prefix + state.text)
        if state.awaiting_free_text:
            lines.append("  Type your answer.")
        else:
            lines.extend(f"  {i}. {option}" for i, option in enumerate(state.options, 1))
        if state.saved_answer:
            lines.append(f"  Last time you said: {state.saved_answer}")
    elif isinstance(state, MessageCard):
        lines.append(state.text)
        lines.extend(f"  [{action.label}]" for action in state.actions)
        lines.extend(f"  {i}. {reply}" for i, reply in enumerate(state.quick_replies, 1))
        lines.extend(f"  Source: {source.title} <{source.url}>" for source in state.sources)
    elif isinstance(state, TaskCreatedCard):
        lines.append(f"{state.message} {state.task.title}")
        lines.extend(format_step(i, step) for i, step in enumerate(state.task.steps, 1))
        lines.extend(f"  Source: {source.title} <{source.url}>" for source in state.sources)
    elif isinstance(state, ErrorCard):
        lines.append(state.text)
        lines.extend(f"  {i}. {option}" for i, option in enumerate(state.retry_options, 1))
    return "\n".join(lines)


def card_choices(state: CardState) -> tuple[str, ...]:
    """Options the user can pick by number on the current card."""
    if isinstance(state, QuestionCard) and not state.awaiting_free_text:
        return state.options
    if isinstance(state, MessageCard):
        return state.quick_replies
    if isinstance(state, ErrorCard):
        return state.retry_options
    return ()


def _load(config_path: Path | None) -> GatherConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="TOML configuration file",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Path | None) -> None:
    """Gather - turn what you need to do into a plan."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    ctx.obj = config_path


@cli.command()
@click.argument("title")
@click.option("--description", "-d", default=None, help="Extra context for the task")
@click.pass_obj
def steps(config_path: Path | None, title: str, description: str | None) -> None:
    """Generate steps for TITLE."""
    config = _load(config_path)
    asyncio.run(_steps_async(config, title, description))


async def _steps_async(config: GatherConfig, title: str, description: str | None) -> None:
    async with RetryClient(config.api_key, config.ai) as client:
        result = await TaskBreakdownGenerator(client, config.ai).generate_steps(title, description=description)

    click.echo(title)
    for index, step in enumerate(result.steps, 1):
        click.echo(format_step(index, step))
    for source in result.sources:
        click.echo(f"  Source: {source.title} <{source.url}>")
    if result.used_fallback:
        click.echo("(basic steps: the assistant was unavailable)")


@cli.command()
@click.pass_obj
def chat(config_path: Path | None) -> None:
    """Start an interactive conversation."""
    config = _load(config_path)
    click.echo("Tell me what you need to do. Type /help for commands.")
    asyncio.run(_chat_async(config))


async def _chat_async(config: GatherConfig) -> None:
    tasks = InMemoryTaskStore()
    async with RetryClient(config.api_key, config.ai) as client:
        orchestrator = ConversationOrchestrator(
            client,
            tasks,
            preferences=InMemoryPreferenceStore(),
            memory=InMemoryMemoryStore(),
            config=config,
        )
        try:
            while True:
                try:
                    line = click.prompt(">", prompt_suffix=" ").strip()
                except (EOFError, click.Abort):
                    break
                if line == "/quit":
                    break
                if line.startswith("/"):
                    await _run_command(orchestrator, tasks, line)
                    continue

                choices = card_choices(orchestrator.card.state)
                if line.isdigit() and 1 <= int(line) <= len(choices):
                    state = await orchestrator.handle_quick_reply(choices[int(line) - 1])
                else:
                    state = await orchestrator.submit(line)

                text = render_card(state)
                if text:
                    click.echo(text)
        finally:
            orchestrator.close()


async def _run_command(orchestrator: ConversationOrchestrator, tasks: InMemoryTaskStore, line: str) -> None:
    command, _, arg = line.partition(" ")
    if command == "/help":
        click.echo(CHAT_HELP)
    elif command == "/back":
        click.echo(render_card(orchestrator.go_back()))
    elif command == "/dismiss":
        orchestrator.dismiss()
    elif command == "/home":
        orchestrator.focus(None)
        orchestrator.clear_conversation()
    elif command == "/tasks":
        listed = await tasks.list_tasks()
        if not listed:
            click.echo("No tasks yet.")
        for index, task in enumerate(listed, 1):
            done = sum(1 for step in task.steps if step.done)
            click.echo(f"  {index}. {task.title} ({done}/{len(task.steps)} steps)")
    elif command == "/focus":
        listed = await tasks.list_tasks()
        if not arg.strip().isdigit() or not 1 <= int(arg) <= len(listed):
            click.echo("Usage: /focus <n> (see /tasks)")
            return
        task = listed[int(arg) - 1]
        orchestrator.clear_conversation()
        orchestrator.focus(task.id)
        click.echo(task.title)
        for index, step in enumerate(task.steps, 1):
            click.echo(format_step(index, step))
    else:
        click.echo(f"Unknown command: {command}")


def main() -> None:
    """Entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
