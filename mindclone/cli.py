"""
CLI interface for the memory journal.

Usage:
    mindclone add "Buy milk"
    mindclone list --tag groceries
    mindclone ask "What do I need from the shop?"
"""

import asyncio
import json
import mimetypes
import os
import shutil
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Iterator, Optional

import typer
from typing_extensions import Annotated

from .config import get_default_store_path, load_or_create_config
from .gateway import InferenceGateway
from .logging_config import (
    configure_ops_log,
    configure_quiet_mode,
    enable_debug_mode,
    remove_ops_log,
)
from .providers.base import InferenceError, get_registry
from .repository import MemoryRepository
from .types import AiAction, ChatMessage, ImageData, Memory, MemoryType, parse_tag_list
from .views import ALL_TYPES, highlight_edges, neighbor_closure
from .workspace import ValidationError, Workspace


def _output_width() -> int:
    """Terminal width for preview truncation. Use generous default when not a TTY."""
    if not sys.stdout.isatty():
        return 200
    return shutil.get_terminal_size((120, 24)).columns


# Configure quiet mode by default (suppress verbose library output)
# Set MINDCLONE_VERBOSE=1 to enable debug mode via environment
if os.environ.get("MINDCLONE_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"mindclone {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="mindclone",
    help="Personal memory journal with AI summaries, tags and questions.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="MINDCLONE_STORE_PATH",
        help="Path to the store directory (default: ~/.mindclone/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Personal memory journal with AI summaries, tags and questions."""


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------

def _store_path() -> Path:
    override = _get_store_override()
    if override is not None:
        return Path(override).expanduser().resolve()
    return get_default_store_path()


@asynccontextmanager
async def _session() -> AsyncIterator[Workspace]:
    """Open the store, the configured provider and a workspace over them."""
    store_path = _store_path()
    config = load_or_create_config(store_path)
    handler = configure_ops_log(store_path)
    try:
        try:
            provider = get_registry().create_inference(config.inference.name, config.inference.params)
        except (ValueError, RuntimeError) as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
        gateway = InferenceGateway(
            provider,
            timeout=config.gateway.timeout,
            tag_context_limit=config.gateway.tag_context_limit,
        )
        async with MemoryRepository(config.database_path) as repo:
            workspace = Workspace(repo, gateway)
            try:
                yield workspace
            finally:
                workspace.close()
    finally:
        remove_ops_log(handler)


def _run(coro):
    return asyncio.run(coro)


def _require(ws: Workspace, id: str) -> Memory:
    memory = ws.repository.get(id)
    if memory is None:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    return memory


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _local_date(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _preview(memory: Memory) -> str:
    if memory.smart_summary:
        text = memory.smart_summary.title
    else:
        text = memory.searchable_text or ""
    return " ".join(text.split())


def _format_summary_line(memory: Memory) -> str:
    """One line per memory: id, date, type, tags, preview."""
    tags = f" [{', '.join(memory.tags)}]" if memory.tags else ""
    head = f"{memory.id}  {_local_date(memory.created_at)}  {memory.type.value:<5}{tags}  "
    room = max(_output_width() - len(head), 20)
    text = _preview(memory)
    if len(text) > room:
        text = text[:room - 3] + "..."
    return head + text


def _memory_json(memory: Memory) -> dict:
    d = memory.to_dict()
    if memory.pending:
        d["pending"] = sorted(k.value for k in memory.pending)
    return d


def _format_memories(memories: list[Memory]) -> str:
    if _get_json_output():
        return json.dumps([_memory_json(m) for m in memories], indent=2, ensure_ascii=False)
    if not memories:
        return "No memories."
    return "\n".join(_format_summary_line(m) for m in memories)


def _format_detail(memory: Memory, related: list[Memory]) -> str:
    if _get_json_output():
        return json.dumps(_memory_json(memory), indent=2, ensure_ascii=False)
    lines = [
        f"id: {memory.id}",
        f"type: {memory.type.value}",
        f"created: {_local_date(memory.created_at)}",
    ]
    if memory.tags:
        lines.append(f"tags: {', '.join(memory.tags)}")
    if memory.description:
        lines.append(f"description: {memory.description}")
    if memory.type != MemoryType.IMAGE:
        lines += ["", memory.content]
    if memory.smart_summary:
        s = memory.smart_summary
        lines += ["", f"# {s.title}", s.summary]
        lines += [f"  - {p}" for p in s.key_points]
    if related:
        lines += ["", "related:"]
        lines += [f"  {_format_summary_line(m)}" for m in related]
    return "\n".join(lines)


def _format_reply(message: Optional[ChatMessage]) -> str:
    if message is None:
        return ""
    if _get_json_output():
        return json.dumps({
            "sender": message.sender,
            "text": message.text,
            "savable": message.is_savable,
            "sources": [{"uri": s.uri, "title": s.title} for s in message.sources],
        }, indent=2, ensure_ascii=False)
    lines = [message.text]
    if message.sources:
        lines += ["", "sources:"]
        lines += [f"  {s.title} <{s.uri}>" for s in message.sources]
    return "\n".join(lines)


def _format_groups(groups: list[tuple[str, list[Memory]]]) -> str:
    if _get_json_output():
        return json.dumps(
            [{"label": label, "memories": [m.id for m in members]} for label, members in groups],
            indent=2,
        )
    if not groups:
        return "No memories."
    out = []
    for label, members in groups:
        out.append(f"{label} ({len(members)})")
        out.extend(f"  {_format_summary_line(m)}" for m in members)
    return "\n".join(out)


def _collect_tags(tag: Optional[list[str]]) -> list[str]:
    """Tags from repeated --tag options, each of which may be comma-separated."""
    return parse_tag_list(",".join(tag or []))


# -----------------------------------------------------------------------------
# Capture and editing
# -----------------------------------------------------------------------------

TagOption = Annotated[
    Optional[list[str]],
    typer.Option(
        "--tag", "-t",
        help="Tag (repeatable, or comma-separated)"
    )
]


@app.command()
def add(
    content: Annotated[Optional[str], typer.Argument(
        help="Text or URL to remember (reads stdin if '-')"
    )] = None,
    type: Annotated[MemoryType, typer.Option(
        "--type", "-T",
        help="Memory type: text, link or image",
    )] = MemoryType.TEXT,
    image: Annotated[Optional[Path], typer.Option(
        "--image", "-i",
        help="Image file to remember (implies --type image)",
        exists=True, dir_okay=False,
    )] = None,
    tag: TagOption = None,
):
    """
    Capture a new memory.

    Without --tag, tags are suggested by the model.

    \b
    Examples:
        mindclone add "Buy milk"
        mindclone add --type link https://example.com/article
        mindclone add --image photo.jpg -t travel
        echo "Long note" | mindclone add -
    """
    if content == "-":
        content = sys.stdin.read()

    image_data = None
    if image is not None:
        type = MemoryType.IMAGE
        mime = mimetypes.guess_type(str(image))[0] or ""
        if not mime.startswith("image/"):
            typer.echo(f"Error: not an image file: {image}", err=True)
            raise typer.Exit(1)
        image_data = ImageData(mime_type=mime, data=image.read_bytes())

    async def run():
        async with _session() as ws:
            return await ws.capture(type, content, image=image_data, tags=_collect_tags(tag))

    try:
        memory = _run(run())
    except ValidationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except InferenceError as e:
        typer.echo(f"Error: could not describe image: {e}", err=True)
        raise typer.Exit(1)
    if memory is None:
        typer.echo("Error: memory was not saved", err=True)
        raise typer.Exit(1)
    typer.echo(_format_memories([memory]) if _get_json_output() else _format_summary_line(memory))


@app.command("list")
def list_memories(
    search: Annotated[Optional[str], typer.Option(
        "--search", "-q", help="Case-insensitive text search"
    )] = None,
    type: Annotated[Optional[MemoryType], typer.Option(
        "--type", "-T", help="Only memories of this type"
    )] = None,
    tag: Annotated[Optional[str], typer.Option(
        "--tag", "-t", help="Only memories with this tag"
    )] = None,
    limit: Annotated[int, typer.Option(
        "--limit", "-n", help="Maximum results to return (0 for all)"
    )] = 20,
):
    """
    List memories, newest first.

    \b
    Examples:
        mindclone list
        mindclone list --tag work --type text
        mindclone list -q milk
    """
    async def run():
        async with _session() as ws:
            if search:
                ws.set_search_term(search)
            ws.set_type_filter(type if type is not None else ALL_TYPES)
            ws.set_tag_filter(tag)
            return ws.visible_memories()

    memories = _run(run())
    if limit > 0:
        memories = memories[:limit]
    typer.echo(_format_memories(memories))


@app.command()
def get(
    id: Annotated[str, typer.Argument(help="Memory ID")],
):
    """Show one memory with its summary and related memories."""
    async def run():
        async with _session() as ws:
            memory = _require(ws, id)
            related = [ws.repository.get(r) for r in memory.related_memory_ids or []]
            return memory, [m for m in related if m is not None]

    memory, related = _run(run())
    typer.echo(_format_detail(memory, related))


@app.command("del")
def del_cmd(
    id: Annotated[list[str], typer.Argument(help="ID(s) of memories to delete")],
):
    """
    Delete one or more memories.

    \b
    Examples:
        mindclone del mem_1718000000000
        mindclone del mem_1718000000000 mem_1718000000001
    """
    async def run():
        async with _session() as ws:
            missing = [i for i in id if ws.repository.get(i) is None]
            deleted = await ws.bulk_delete([i for i in id if i not in missing])
            return deleted, missing

    deleted, missing = _run(run())
    for one_id in missing:
        typer.echo(f"Not found: {one_id}", err=True)
    typer.echo(f"Deleted {deleted} memor{'y' if deleted == 1 else 'ies'}")
    if missing:
        raise typer.Exit(1)


@app.command()
def tag(
    id: Annotated[list[str], typer.Argument(help="ID(s) of memories to tag")],
    tag: TagOption = None,
):
    """
    Add tags to one or more memories.

    \b
    Examples:
        mindclone tag mem_1 mem_2 -t work,urgent
    """
    tags = _collect_tags(tag)
    if not tags:
        typer.echo("Error: at least one --tag is required", err=True)
        raise typer.Exit(1)

    async def run():
        async with _session() as ws:
            return await ws.bulk_tag(id, tags)

    count = _run(run())
    typer.echo(f"Tagged {count} memor{'y' if count == 1 else 'ies'} with {', '.join(tags)}")


@app.command()
def untag(
    id: Annotated[str, typer.Argument(help="Memory ID")],
    tag: Annotated[str, typer.Argument(help="Tag to remove")],
):
    """Remove a tag from a memory."""
    async def run():
        async with _session() as ws:
            _require(ws, id)
            return await ws.remove_tag(id, tag)

    if not _run(run()):
        typer.echo(f"Tag '{tag}' not on {id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Removed '{tag}' from {id}")


# -----------------------------------------------------------------------------
# AI operations
# -----------------------------------------------------------------------------

@app.command()
def summarize(
    id: Annotated[str, typer.Argument(help="Memory ID (text or link)")],
):
    """Generate a smart summary for a memory."""
    async def run():
        async with _session() as ws:
            memory = _require(ws, id)
            if memory.type == MemoryType.IMAGE:
                typer.echo("Error: image memories have no smart summary", err=True)
                raise typer.Exit(1)
            ok = await ws.generate_smart_summary(id)
            return ok, ws.repository.get(id)

    ok, memory = _run(run())
    if not ok:
        typer.echo("Error: failed to generate summary (see log)", err=True)
        raise typer.Exit(1)
    typer.echo(_format_detail(memory, []))


@app.command()
def related(
    id: Annotated[str, typer.Argument(help="Memory ID")],
):
    """Find and store the memories most related to this one."""
    async def run():
        async with _session() as ws:
            _require(ws, id)
            ids = await ws.find_related_memories(id)
            return [m for m in (ws.repository.get(i) for i in ids or []) if m is not None]

    typer.echo(_format_memories(_run(run())))


def _read_question() -> Optional[str]:
    """Next question from the prompt; None on a blank line or end of input."""
    try:
        line = typer.prompt(">", default="", show_default=False, prompt_suffix=" ")
    except typer.Abort:
        return None
    return line.strip() or None


def _questions(first: Optional[str], interactive: bool) -> Iterator[str]:
    if first is not None:
        yield first
    if not interactive:
        return
    while True:
        question = _read_question()
        if question is None:
            return
        yield question


def _echo_answer(reply: ChatMessage, cited: list[Memory]) -> None:
    if _get_json_output():
        payload = json.loads(_format_reply(reply))
        payload["memories"] = [m.id for m in cited]
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    typer.echo(_format_reply(reply))
    if cited:
        typer.echo("\nrelevant memories:")
        for m in cited:
            typer.echo(f"  {_format_summary_line(m)}")


InteractiveOption = Annotated[bool, typer.Option(
    "--interactive", "-i",
    help="Keep reading follow-up questions until a blank line",
)]


@app.command()
def ask(
    question: Annotated[Optional[str], typer.Argument(help="Question about all your memories")] = None,
    interactive: InteractiveOption = False,
):
    """
    Ask a question across the whole collection.

    The answer is followed by the memories it cites. With --interactive,
    follow-up questions share one conversation.
    """
    if question is None and not interactive:
        typer.echo("Error: give a question or use --interactive", err=True)
        raise typer.Exit(1)

    async def run():
        answered = 0
        async with _session() as ws:
            for q in _questions(question, interactive):
                reply = await ws.global_query(q)
                if reply is None:
                    continue
                _echo_answer(reply, ws.visible_memories() if ws.filters.ai_active else [])
                answered += 1
        return answered

    if not _run(run()) and not interactive:
        typer.echo("Error: empty question", err=True)
        raise typer.Exit(1)


@app.command()
def chat(
    id: Annotated[str, typer.Argument(help="Memory ID")],
    question: Annotated[Optional[str], typer.Argument(help="Question about this memory")] = None,
    interactive: InteractiveOption = False,
):
    """
    Ask a question about one memory.

    With --interactive, follow-up questions keep the conversation about it.
    """
    if question is None and not interactive:
        typer.echo("Error: give a question or use --interactive", err=True)
        raise typer.Exit(1)

    async def run():
        async with _session() as ws:
            _require(ws, id)
            for q in _questions(question, interactive):
                reply = await ws.chat(id, q)
                if reply is not None:
                    typer.echo(_format_reply(reply))

    _run(run())


@app.command()
def action(
    id: Annotated[str, typer.Argument(help="Memory ID")],
    name: Annotated[AiAction, typer.Argument(help="Action to run")],
    tone: Annotated[str, typer.Option("--tone", help="Tone for rewrite")] = "Formal",
    language: Annotated[str, typer.Option("--language", help="Language for translate")] = "Spanish",
    save: Annotated[bool, typer.Option(
        "--save", help="Save the result as a new memory"
    )] = False,
):
    """
    Run an AI action on a memory.

    \b
    Examples:
        mindclone action mem_1 rewrite --tone Poetic
        mindclone action mem_1 translate --language French --save
        mindclone action mem_2 analyze_image
    """
    async def run():
        async with _session() as ws:
            _require(ws, id)
            reply = await ws.run_action(id, name, tone=tone, language=language)
            saved = None
            if save and reply is not None and reply.is_savable:
                saved = await ws.save_as_new_memory(reply.text)
            return reply, saved, ws.repository.get(id)

    try:
        reply, saved, memory = _run(run())
    except ValidationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if reply is None:
        # Summary and related actions update the memory itself
        typer.echo(_format_detail(memory, []))
        return
    typer.echo(_format_reply(reply))
    if saved is not None:
        typer.echo(f"Saved as {saved.id}", err=True)


@app.command()
def insights():
    """Suggest three questions based on recent memories."""
    async def run():
        async with _session() as ws:
            return await ws.insights()

    prompts = _run(run())
    if _get_json_output():
        typer.echo(json.dumps(prompts))
    elif not prompts:
        typer.echo("No memories yet.")
    else:
        for p in prompts:
            typer.echo(f"- {p}")


# -----------------------------------------------------------------------------
# Views
# -----------------------------------------------------------------------------

@app.command()
def timeline():
    """Memories grouped by Today, Yesterday, This Week, This Month, then by month."""
    async def run():
        async with _session() as ws:
            return ws.timeline()

    typer.echo(_format_groups(_run(run())))


@app.command()
def canvas():
    """Memories grouped by their first tag."""
    async def run():
        async with _session() as ws:
            return ws.canvas()

    typer.echo(_format_groups(_run(run())))


@app.command()
def graph(
    focus: Annotated[Optional[str], typer.Option(
        "--focus", "-f", help="Only show this memory and its direct neighbours"
    )] = None,
):
    """Show the relationship graph found by 'related'."""
    async def run():
        async with _session() as ws:
            return ws.graph()

    g = _run(run())
    nodes, edges = g.nodes, g.edges
    if focus:
        keep_ids = neighbor_closure(focus, edges)
        nodes = [n for n in nodes if n.id in keep_ids]
        edges = highlight_edges(focus, edges)

    if _get_json_output():
        typer.echo(json.dumps({
            "nodes": [{"id": n.id, "label": n.label, "type": n.type.value} for n in nodes],
            "edges": [{"source": e.source, "target": e.target} for e in edges],
        }, indent=2, ensure_ascii=False))
        return
    labels = {n.id: n.label for n in nodes}
    for n in nodes:
        typer.echo(f"{n.id}  {n.type.value:<5}  {n.label}")
    if edges:
        typer.echo("")
        for e in edges:
            typer.echo(f"{labels.get(e.source, e.source)} -> {labels.get(e.target, e.target)}")


@app.command()
def tags():
    """List tags with the number of memories using each."""
    async def run():
        async with _session() as ws:
            return ws.tags()

    counts = _run(run())
    if _get_json_output():
        typer.echo(json.dumps(dict(counts)))
    elif not counts:
        typer.echo("No tags found.")
    else:
        for name, n in counts:
            typer.echo(f"{name} ({n})")


# -----------------------------------------------------------------------------
# Data Management
# -----------------------------------------------------------------------------

data_app = typer.Typer(
    name="data",
    help="Data management: export, import.",
    rich_markup_mode=None,
)
app.add_typer(data_app)


@data_app.command("export")
def data_export(
    output: Annotated[str, typer.Argument(
        help="Output file path (use '-' for stdout)"
    )],
):
    """Export all memories to JSON for backup or migration."""
    async def run():
        async with _session() as ws:
            return ws.repository.export_data()

    data = _run(run())
    text = json.dumps(data, indent=2, ensure_ascii=False)
    if output == "-":
        typer.echo(text)
        return
    Path(output).write_text(text + "\n", encoding="utf-8")
    typer.echo(f"Exported {len(data['memories'])} memories to {output}", err=True)


@data_app.command("import")
def data_import(
    file: Annotated[str, typer.Argument(help="JSON export file to import")],
    mode: Annotated[str, typer.Option(
        "--mode", "-m", help="Import mode: merge (upsert by id) or replace (clear first)"
    )] = "merge",
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Don't ask for confirmation")] = False,
):
    """Import memories from a JSON export file."""
    if mode not in ("merge", "replace"):
        typer.echo(f"Error: --mode must be 'merge' or 'replace', got '{mode}'", err=True)
        raise typer.Exit(1)

    if file == "-":
        data = json.loads(sys.stdin.read())
    else:
        path = Path(file)
        if not path.exists():
            typer.echo(f"Error: file not found: {file}", err=True)
            raise typer.Exit(1)
        data = json.loads(path.read_text(encoding="utf-8"))

    if mode == "replace" and not yes:
        count = len(data.get("memories", []))
        if not typer.confirm(
            f"This will delete all existing memories and import {count} from {file}. Continue?"
        ):
            raise typer.Exit(0)

    async def run():
        async with _session() as ws:
            return await ws.repository.import_data(data, mode=mode)

    imported = _run(run())
    typer.echo(f"Imported {imported} memories", err=True)


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception, user_message
        log_path = log_exception(e, context="mindclone CLI", store_path=_get_store_override())
        typer.echo(f"Error: {user_message(e)}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
