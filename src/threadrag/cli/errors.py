"""threadrag rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from threadrag.cli.errors import err_no_api_key, err_no_db
    console.print(err_no_api_key("openai"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from rich.markup import escape


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_db(db_path: str = ".threadrag.db") -> str:
    """No database at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  threadrag ingest"
    )


def err_invalid_config(message: str) -> str:
    """Configuration rejected before any work started."""
    return (
        "[red]Error:[/] Invalid configuration.\n"
        f"  {escape(message)}\n"
        "  Fix threadrag.yaml, the THREADRAG_* environment variables, or the CLI flags."
    )


def err_missing_salt() -> str:
    """Rate-limit salt not configured."""
    return (
        "[red]Error:[/] Rate-limit salt is not set.\n"
        "  Set:  export THREADRAG_RATE_LIMIT_SALT=<random string>"
    )


def err_dataset_fetch(message: str, offset: int) -> str:
    """Dataset page could not be fetched after all retries."""
    return (
        f"[red]Error:[/] Dataset fetch failed: {escape(message)}\n"
        "  Rows already written are kept. Resume with:\n"
        f"    threadrag ingest --offset {offset}"
    )


def err_embedding_failed(message: str) -> str:
    """Embedding provider failed for good."""
    return (
        f"[red]Error:[/] Embedding failed: {escape(message)}\n"
        "  Vectors already stored are kept. Re-run:  threadrag embed"
    )


def err_dimension_mismatch(message: str) -> str:
    """Vector size disagrees with the registered index."""
    return (
        f"[red]Error:[/] Embedding dimension mismatch.\n"
        f"  {escape(message)}\n"
        "  Use the embedding model the corpus was embedded with, or embed into a new database."
    )


def err_no_vec_index(model: str) -> str:
    """No vector index for the configured embedding model."""
    return (
        f"[red]Error:[/] No vector index for embedding model '{model}'.\n"
        "  Run:  threadrag embed"
    )


def err_rate_limited() -> str:
    return (
        "[yellow]Rate limit exceeded.[/] 0 requests remaining in this window.\n"
        "  Wait for the window to pass and try again."
    )


def err_request_failed(status: str, message: str | None) -> str:
    """Retrieval boundary returned an invalid / error status."""
    label = "Invalid request" if status == "invalid" else "Request failed"
    return f"[red]{label}:[/] {escape(message or 'unknown error')}"


def warn_stale_chunks(count: int, current_params: str) -> str:
    """Chunks produced with other chunking parameters are present."""
    return (
        f"[yellow]⚠[/] {count:,} chunks were produced with chunking parameters other than "
        f"{current_params}.\n"
        "  They stay searchable. Remove them with:  threadrag prune-chunks"
    )
