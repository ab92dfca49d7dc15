"""cli entrypoint for thinkflow."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.tree import Tree

from .config import Settings, get_data_dir
from .context import LOCAL_PROJECT_ID, AppContext, make_remote
from .core.export import export_filename, export_markdown
from .core.graph import GraphStore


console = Console()


def _build_tree(store: GraphStore) -> Tree:
    root = store.root()
    tree = Tree(f"[bold]{root.label}[/bold]")
    stack = [(tree, child_id) for child_id in reversed(store.children_of(root.id))]
    while stack:
        branch, node_id = stack.pop()
        node = store.get_node(node_id)
        if node is None:
            continue
        text = node.label
        if node.description:
            text += f" [dim]- {node.description}[/dim]"
        if node.error:
            text += f" [red]({node.error})[/red]"
        child = branch.add(text)
        stack.extend((child, cid) for cid in reversed(store.children_of(node_id)))
    return tree


async def _load(args) -> AppContext:
    settings = Settings.load()
    if args.mock:
        settings.provider = "mock"
    ctx = AppContext(settings=settings, remote=make_remote(settings), data_dir=args.data_dir)
    await ctx.open_project(args.project or LOCAL_PROJECT_ID)
    return ctx


async def _outline(args) -> int:
    ctx = await _load(args)
    if ctx.store.root() is None:
        console.print(f"[yellow]project {ctx.project_id} is empty[/yellow]")
        return 1
    console.print(_build_tree(ctx.store))
    return 0


async def _export(args) -> int:
    ctx = await _load(args)
    markdown = export_markdown(ctx.store)
    if markdown is None:
        console.print(f"[yellow]project {ctx.project_id} is empty[/yellow]")
        return 1
    if args.output == "-":
        sys.stdout.write(markdown)
        return 0
    path = Path(args.output) if args.output else Path.cwd() / export_filename(ctx.store.root().label)
    path.write_text(markdown)
    console.print(f"exported to {path}")
    return 0


def _serve(args) -> int:
    import uvicorn

    from .api.server import create_app

    settings = Settings.load()
    if args.mock:
        settings.provider = "mock"
    ctx = AppContext(settings=settings, remote=make_remote(settings), data_dir=args.data_dir)
    uvicorn.run(create_app(ctx), host=args.host, port=args.port)
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="thinkflow - grow an idea into a mind map"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    parser.add_argument("--mock", "-m", action="store_true", help="use mock client and in-memory store")
    parser.add_argument("--data-dir", type=Path, default=None, help=f"data directory (default: {get_data_dir()})")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the api server")
    serve.add_argument("--host", default="127.0.0.1", help="host to bind")
    serve.add_argument("--port", "-p", type=int, default=8000, help="port to bind")

    outline = sub.add_parser("outline", help="print a project's map as a tree")
    outline.add_argument("--project", help="project id (default: the local project)")

    export = sub.add_parser("export", help="write a project's map as markdown")
    export.add_argument("--project", help="project id (default: the local project)")
    export.add_argument("--output", "-o", help="output file, or - for stdout")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if args.command == "serve":
        sys.exit(_serve(args))
    handler = _outline if args.command == "outline" else _export
    sys.exit(asyncio.run(handler(args)))


if __name__ == "__main__":
    main()
