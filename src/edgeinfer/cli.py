"""
edgeinfer CLI - Command-line interface for local GGUF inference

Commands:
- scan: Find Ollama model blobs (optionally probing compatibility)
- probe: Check that one model file loads and generates
- inspect: Show GGUF header metadata
- generate: Single-shot or streaming completion
- chat: Interactive multi-turn chat
- benchmark: Measure generation throughput
- profile: Recommended settings for a device class

MODEL arguments accept either a file path or a partial Ollama blob hash.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

app = typer.Typer(
    name="edgeinfer",
    help="On-device text generation with llama.cpp GGUF models",
    no_args_is_help=True,
)
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
    native_logs: bool = typer.Option(False, "--native-logs", help="Forward llama.cpp log output"),
):
    """Configure logging for all commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    if native_logs:
        from edgeinfer.inference import set_native_verbose

        set_native_verbose(True)


@app.command()
def version():
    """Show version information."""
    from edgeinfer import __version__

    console.print(f"edgeinfer version {__version__}")


# === Helpers ===


def _resolve_model(model: str) -> Path:
    """Treat MODEL as a path if it exists, otherwise as a blob hash prefix."""
    from edgeinfer.discovery import ModelDiscoveryProbe
    from edgeinfer.errors import EdgeInferError

    path = Path(model).expanduser()
    if path.exists():
        return path

    try:
        candidate = ModelDiscoveryProbe().find_by_hash(model)
    except EdgeInferError as e:
        console.print(f"[red]Model not found: {model}[/red]")
        console.print(str(e))
        raise typer.Exit(1)
    console.print(f"[cyan]Using Ollama blob {candidate.name}[/cyan]")
    return candidate.path


def _load(model: str, ctx: int, gpu_layers: int, threads: Optional[int]):
    from edgeinfer.errors import EdgeInferError
    from edgeinfer.inference import InferenceSession

    path = _resolve_model(model)
    try:
        return InferenceSession.load(path, context_length=ctx, gpu_layers=gpu_layers, n_threads=threads)
    except EdgeInferError as e:
        console.print(f"[red]Failed to load model:[/red] {e}")
        raise typer.Exit(1)


def _print_fragment(fragment: str) -> None:
    console.print(fragment, end="", markup=False, highlight=False, soft_wrap=True)


# === Discovery Commands ===


@app.command()
def scan(
    directories: Optional[List[Path]] = typer.Option(
        None, "--dir", "-d", help="Blob directory to search (repeatable; default: Ollama locations)"
    ),
    max_size_gb: float = typer.Option(10.0, help="Skip blobs larger than this"),
    test: bool = typer.Option(False, "--test", help="Load and run each candidate to check compatibility"),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
):
    """Find GGUF models stored by Ollama."""
    from edgeinfer.discovery import Compatibility, ModelDiscoveryProbe

    report = ModelDiscoveryProbe().scan(directories, max_size_gb=max_size_gb, test_compatibility=test)

    if as_json:
        console.print(json.dumps(report.to_dict(), indent=2), markup=False, highlight=False, soft_wrap=True)
        return

    if not report.searched:
        console.print("[yellow]No Ollama models directory found. Is Ollama installed?[/yellow]")
        raise typer.Exit(1)

    if not report.candidates:
        console.print(f"[yellow]No GGUF model blobs found ({report.total_found} blobs checked)[/yellow]")
        return

    table = Table(title=f"GGUF models ({report.gguf_models} of {report.total_found} blobs)")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Size (MB)", justify="right")
    table.add_column("GGUF")
    table.add_column("Compatibility")
    table.add_column("Path")

    for c in report.candidates:
        style = {
            Compatibility.COMPATIBLE: "green",
            Compatibility.INCOMPATIBLE: "red",
            Compatibility.UNTESTED: "yellow",
        }[c.compatibility]
        verdict = c.compatibility.value
        if c.failure:
            verdict = f"{verdict}: {c.failure}"
        table.add_row(
            c.name,
            f"{c.size_mb:.1f}",
            f"v{c.gguf_version}",
            f"[{style}]{verdict}[/{style}]",
            str(c.path),
        )

    console.print(table)


@app.command()
def probe(
    model: str = typer.Argument(..., help="Model path or blob hash prefix"),
):
    """Check that a model loads on CPU and generates a token."""
    from edgeinfer.discovery import ModelDiscoveryProbe

    path = _resolve_model(model)
    outcome = ModelDiscoveryProbe().probe_compatibility(path)

    if outcome.compatible:
        console.print(f"[green]Compatible:[/green] {path}")
    else:
        console.print(f"[red]Not compatible:[/red] {path}")
        console.print(f"  {outcome.message}")
        raise typer.Exit(1)


@app.command()
def inspect(
    model: str = typer.Argument(..., help="Model path or blob hash prefix"),
):
    """Show GGUF header metadata."""
    from edgeinfer.discovery import inspect_gguf

    path = _resolve_model(model)
    try:
        info = inspect_gguf(path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot read GGUF header:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title=f"GGUF: {path.name}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key in ["version", "architecture", "name", "context_length", "file_type", "n_tensors", "n_kv"]:
        value = info.get(key)
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


# === Generation Commands ===


@app.command()
def generate(
    model: str = typer.Argument(..., help="Model path or blob hash prefix"),
    prompt: str = typer.Argument(..., help="Prompt text"),
    max_tokens: int = typer.Option(128, "--max-tokens", "-n", help="Maximum tokens to generate"),
    temperature: float = typer.Option(0.8, help="Sampling temperature"),
    top_p: float = typer.Option(0.95, help="Nucleus sampling threshold"),
    sampler: str = typer.Option("greedy", help="Sampling policy: greedy or top-p"),
    seed: Optional[int] = typer.Option(None, help="Seed for the top-p sampler"),
    ctx: int = typer.Option(2048, "--ctx", help="Context length"),
    gpu_layers: int = typer.Option(0, help="Layers to offload to GPU"),
    threads: Optional[int] = typer.Option(None, help="Compute threads (default: half the cores)"),
    stream: bool = typer.Option(False, "--stream", help="Print tokens as they are generated"),
    include_prompt: bool = typer.Option(False, "--include-prompt", help="Echo the prompt before the output"),
    timeout: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
):
    """Generate a completion for a prompt."""
    from edgeinfer.errors import EdgeInferError
    from edgeinfer.inference import get_sampler

    try:
        policy = get_sampler(sampler, seed=seed)
    except EdgeInferError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    with _load(model, ctx, gpu_layers, threads) as session:
        try:
            if stream:
                if include_prompt:
                    _print_fragment(prompt)

                def show(chunk):
                    if not chunk.is_final:
                        _print_fragment(chunk.token)
                    return True

                result = session.stream(
                    prompt,
                    show,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    top_p=top_p,
                    sampler=policy,
                    timeout_seconds=timeout,
                )
                console.print()
                console.print(
                    f"[dim]Done: {result.tokens_generated} tokens "
                    f"({result.finish_reason.value}, {result.generation_time_ms:.0f}ms)[/dim]"
                )
            else:
                text = session.generate(
                    prompt,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    top_p=top_p,
                    include_prompt=include_prompt,
                    sampler=policy,
                    timeout_seconds=timeout,
                )
                _print_fragment(text + "\n")
        except EdgeInferError as e:
            console.print(f"[red]Generation failed:[/red] {e}")
            raise typer.Exit(1)


@app.command()
def chat(
    model: str = typer.Argument(..., help="Model path or blob hash prefix"),
    system: Optional[str] = typer.Option(None, "--system", "-s", help="System prompt"),
    max_history: int = typer.Option(10, help="Exchanges kept in the prompt"),
    max_tokens: int = typer.Option(200, "--max-tokens", "-n", help="Maximum tokens per reply"),
    temperature: float = typer.Option(0.8, help="Sampling temperature"),
    ctx: int = typer.Option(2048, "--ctx", help="Context length"),
    gpu_layers: int = typer.Option(0, help="Layers to offload to GPU"),
    transcript: Optional[Path] = typer.Option(None, help="Save the conversation here as JSON on exit"),
):
    """Interactive chat with streamed replies."""
    from edgeinfer.conversation import ChatSession, ConversationManager, is_exit_command
    from edgeinfer.errors import EdgeInferError

    with _load(model, ctx, gpu_layers, None) as session:
        conversation = ConversationManager(system_prompt=system, max_turns_kept=max_history)
        chat_session = ChatSession(
            session,
            conversation,
            max_tokens=max_tokens,
            temperature=temperature,
        )

        console.print("[green]Chat started! Type 'quit', 'exit', or 'bye' to end.[/green]\n")
        while True:
            try:
                user_input = console.input("[bold cyan]You:[/bold cyan] ")
            except (EOFError, KeyboardInterrupt):
                console.print()
                break
            if is_exit_command(user_input):
                break

            console.print("[bold magenta]Assistant:[/bold magenta] ", end="")
            try:
                chat_session.respond(user_input, on_token=_print_fragment)
            except EdgeInferError as e:
                console.print(f"\n[red]Generation failed:[/red] {e}")
                continue
            console.print("\n")

        console.print("[green]Chat ended![/green]")
        if transcript:
            conversation.save(transcript)
            console.print(f"Transcript saved to {transcript}")


@app.command("benchmark")
def benchmark_cmd(
    model: str = typer.Argument(..., help="Model path or blob hash prefix"),
    prompt: str = typer.Option("The quick brown fox", help="Benchmark prompt"),
    max_tokens: int = typer.Option(50, "--max-tokens", "-n", help="Tokens per iteration"),
    iterations: int = typer.Option(3, help="Number of timed runs"),
    ctx: int = typer.Option(2048, "--ctx", help="Context length"),
    gpu_layers: int = typer.Option(0, help="Layers to offload to GPU"),
    threads: Optional[int] = typer.Option(None, help="Compute threads (default: half the cores)"),
):
    """Measure greedy generation throughput."""
    from edgeinfer.errors import EdgeInferError
    from edgeinfer.inference import benchmark

    with _load(model, ctx, gpu_layers, threads) as session:
        try:
            report = benchmark(session, prompt=prompt, max_tokens=max_tokens, iterations=iterations)
        except EdgeInferError as e:
            console.print(f"[red]Benchmark failed:[/red] {e}")
            raise typer.Exit(1)

    table = Table(title=f"Benchmark ({report.iterations} iterations)")
    table.add_column("Run", style="cyan")
    table.add_column("Tokens", justify="right")
    table.add_column("Time (s)", justify="right")
    table.add_column("Tokens/s", justify="right", style="green")
    for i, (n, t, rate) in enumerate(zip(report.tokens, report.times_s, report.tokens_per_second), 1):
        table.add_row(str(i), str(n), f"{t:.3f}", f"{rate:.1f}")
    console.print(table)
    console.print(f"Average: [green]{report.avg_tokens_per_second:.1f}[/green] tokens/s")


@app.command()
def profile(
    target: str = typer.Option("laptop", help="mobile, laptop, desktop, or server"),
    model_size_mb: Optional[float] = typer.Option(None, help="Model file size in MB"),
    ram_gb: Optional[float] = typer.Option(None, help="Available RAM in GB"),
):
    """Show recommended settings for a device class."""
    from edgeinfer.profiles import recommend_profile

    rec = recommend_profile(target, model_size_mb=model_size_mb, available_ram_gb=ram_gb)

    table = Table(title=f"Profile: {rec.target}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("context_length", str(rec.context_length))
    table.add_row("gpu_layers", str(rec.gpu_layers))
    table.add_row("max_tokens", str(rec.max_tokens))
    table.add_row("temperature", str(rec.temperature))
    console.print(table)
    console.print(rec.description)
    for tip in rec.tips:
        console.print(f"  - {tip}")


if __name__ == "__main__":
    app()
