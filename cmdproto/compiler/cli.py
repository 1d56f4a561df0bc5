"""Command-line interface for the command protocol compiler."""

from __future__ import annotations

import functools
import json
import logging
import sys
from collections.abc import Callable
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from cmdproto.compiler.compiler import CompiledProtocol, CompilerOptions, compile_protocol
from cmdproto.compiler.errors import CompilerError
from cmdproto.compiler.fingerprint import ProtocolRevision, load_revisions
from cmdproto.compiler.model import load_model
from cmdproto.compiler.packer import StructPacker


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log compiler progress")
def cli(verbose: bool) -> None:
    """Command protocol compiler."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


def compiler_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command that compiles a model."""

    @click.option("--input", "-i", "input_file", required=True, help="Input model file (JSON)")
    @click.option(
        "--pointer-width",
        type=click.Choice(["4", "8"]),
        default="8",
        envvar="CMDPROTO_POINTER_WIDTH",
        show_default=True,
        help="Host pointer width in bytes",
    )
    @click.option(
        "--release",
        is_flag=True,
        default=False,
        help="Optimized build: no diagnostic validation or hard transport-denial failures",
    )
    @click.option("--revisions", "revisions_file", default=None, help="Revision record (JSON)")
    @functools.wraps(func)
    def wrapper(
        input_file: str,
        pointer_width: str,
        release: bool,
        revisions_file: str | None,
        **kwargs: Any,
    ) -> Any:
        options = CompilerOptions(pointer_width=int(pointer_width), diagnostic_build=not release)
        try:
            options.validate()
            packer = StructPacker(options.pointer_width, options.empty_struct_size)
            model = load_model(input_file, packer)
            revisions = load_revisions(revisions_file) if revisions_file else ProtocolRevision()
            compiled = compile_protocol(model, options, revisions)
        except CompilerError as e:
            print(f"Error: {e}")
            sys.exit(1)
        return func(compiled, **kwargs)

    return wrapper


@cli.command("compile")
@compiler_options
@click.option("--output", "-o", "output_file", required=True, help="Output file")
def compile_command(compiled: CompiledProtocol, output_file: str) -> None:
    """Compile a model into layouts, dispatch data and fingerprints."""
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(compiled.to_dict(), f, indent=2)
        f.write("\n")


@cli.command()
@compiler_options
@click.option("--command", "-c", "command_name", default=None, help="Only this struct name")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def layout(compiled: CompiledProtocol, command_name: str | None, output_json: bool) -> None:
    """Display packed command layouts."""
    commands = compiled.commands
    if command_name is not None:
        try:
            commands = (compiled.command(command_name),)
        except KeyError:
            print(f"Unknown command: {command_name}")
            sys.exit(1)

    if output_json:
        data = {c.command.struct_name: c.layout.to_dict() for c in commands}
        print(json.dumps(data, indent=2))
        return

    console = Console()
    for c in commands:
        console.print(
            f"[bold cyan]{c.command.struct_name}[/bold cyan] "
            f"[dim]({c.layout.total_size} bytes, align {c.layout.max_alignment})[/dim]"
        )
        table = Table(show_header=True, box=None, padding=(0, 2, 0, 2))
        table.add_column("Offset", style="yellow", justify="right")
        table.add_column("Size", style="yellow", justify="right")
        table.add_column("Name", style="white")
        table.add_column("Kind", style="dim")
        for entry in c.layout.entries:
            kind = entry.kind.value
            if entry.is_handle:
                kind += ", handle"
            if entry.is_animation:
                kind += ", animation"
            table.add_row(str(entry.offset), str(entry.size), entry.name, kind)
        console.print(table)
        console.print()


@cli.command()
@compiler_options
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def classify(compiled: CompiledProtocol, output_json: bool) -> None:
    """Display the dispatch route of every command."""
    if output_json:
        data = {
            c.command.struct_name: c.to_dict(compiled.options)["dispatch"]
            for c in compiled.commands
        }
        print(json.dumps(data, indent=2))
        return

    console = Console()
    table = Table(show_header=True, box=None, padding=(0, 2, 0, 0))
    table.add_column("Command", style="white")
    table.add_column("Route", style="green")
    table.add_column("Handler / Resource", style="yellow")
    table.add_column("Denied transport", style="dim")
    table.add_column("Validated fields", style="dim")

    for c in compiled.commands:
        d = c.dispatch
        if d.exclusion is not None:
            detail = d.exclusion.value
        else:
            detail = d.handler or f"{d.resource_type} via {d.handle_field}"
        denial = d.denial_action(compiled.options.diagnostic_build)
        validated = ", ".join(d.validation.fields) if d.validation else ""
        table.add_row(d.command, d.route.value, detail, denial.value if denial else "", validated)

    console.print(table)


@cli.command()
@compiler_options
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def fingerprint(compiled: CompiledProtocol, output_json: bool) -> None:
    """Display the primary and secondary protocol fingerprints."""
    fp = compiled.fingerprint
    if output_json:
        print(json.dumps(fp.to_dict(), indent=2))
        return

    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2, 0, 2))
    table.add_column("Label", style="dim")
    table.add_column("Value", style="white")
    table.add_row("Primary", f"0x{fp.primary:08X}")
    table.add_row("Secondary", f"0x{fp.secondary:08X}")
    console.print(table)


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
