"""confgen CLI entry point."""

import importlib
import inspect
import logging
import os
import sys

import click
from rich.console import Console
from rich.logging import RichHandler

from confgen import __version__
from confgen.errors import ConfigGeneratorError, GeneratorLoadError
from confgen.generator import ConfigGenerator

console = Console(stderr=True)


def setup_logging(level: int) -> None:
    """Configure logging with rich handler."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
        force=True,
    )
    logging.getLogger("confgen").setLevel(level)


def load_generator(target: str) -> type[ConfigGenerator]:
    """Resolve a ConfigGenerator subclass from "module:Class" or "module".

    A bare module must define exactly one concrete ConfigGenerator subclass.

    Raises:
        GeneratorLoadError: If the target can't be imported or resolved.
    """
    module_name, _, class_name = target.partition(":")
    if os.getcwd() not in sys.path:
        sys.path.insert(0, os.getcwd())

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise GeneratorLoadError(f"Cannot import {module_name}: {e}") from e

    if class_name:
        cls = getattr(module, class_name, None)
        if not (inspect.isclass(cls) and issubclass(cls, ConfigGenerator)):
            raise GeneratorLoadError(f"{target} is not a ConfigGenerator subclass")
        if inspect.isabstract(cls):
            missing = ", ".join(sorted(cls.__abstractmethods__))
            raise GeneratorLoadError(f"{target} does not implement {missing}")
        return cls

    candidates = [
        attr
        for attr in vars(module).values()
        if inspect.isclass(attr)
        and issubclass(attr, ConfigGenerator)
        and not inspect.isabstract(attr)
        and attr.__module__ == module.__name__
    ]
    if len(candidates) != 1:
        raise GeneratorLoadError(
            f"{module_name} defines {len(candidates)} ConfigGenerator subclasses; "
            "name one with module:Class"
        )
    return candidates[0]


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """confgen - run config generator daemons."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command()
@click.argument("target")
@click.option("--once", is_flag=True, help="Generate the config once and exit")
@click.option("--prefix", default=None, help="Environment variable prefix (default: from class name)")
@click.pass_context
def run(ctx: click.Context, target: str, once: bool, prefix: str | None) -> None:
    """Run the config generator TARGET (module:Class)."""
    try:
        generator_cls = load_generator(target)
        generator = generator_cls(os.environ, prefix=prefix)
    except ConfigGeneratorError as e:
        console.print(f"[red]✗[/red] {e}")
        raise SystemExit(1) from e

    setup_logging(logging.DEBUG if ctx.obj["verbose"] else generator.settings.logging_level)

    if once:
        generator.settings = generator.settings.model_copy(update={"oneshot": True})

    try:
        generator.start()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
    except OSError as e:
        logging.getLogger(__name__).critical(f"Filesystem error, giving up: {e}")
        raise SystemExit(1) from e


@cli.command()
def version() -> None:
    """Show the confgen version."""
    click.echo(f"confgen {__version__}")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
