# ruff: noqa: I001
"""CLI for the ``transaction_intelligence`` package.

Command handlers (``cmd_*``) return a process exit code and print a JSON
summary to stdout; errors go to stderr with exit code 1. The Typer app wires
them to subcommands. Environment variables (``DATABASE_URL``,
``OPENAI_API_KEY``, ``TI_*``) are loaded from a local ``.env`` using
``python-dotenv`` before any command runs. Business logic lives in
``transaction_intelligence.api``.
"""

from __future__ import annotations

import json
import sys
from datetime import date
from pathlib import Path
from typing import Any

import typer
from dotenv import load_dotenv
from typer.models import OptionInfo

from .logging_setup import configure_logging


def _emit(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _parse_as_of(raw: str | None) -> date | None:
    if raw is None:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as e:
        raise ValueError(f"Invalid input: --as-of must be YYYY-MM-DD, got {raw!r}") from e


def _fail(action: str, err: Exception) -> int:
    print(f"Error: {action} failed: {err}", file=sys.stderr)
    return 1


# ---- Command handlers -------------------------------------------------------------


def cmd_categorize(
    user_id: str,
    *,
    database_url: str | None = None,
    recheck: bool = False,
    no_ai: bool = False,
    learn_keywords: bool = False,
    max_iterations: int | None = None,
) -> int:
    from .api import run_categorization
    from .config import CategorizationOptions

    try:
        overrides: dict[str, Any] = {
            "skip_categorized": not recheck,
            "learn_keywords": learn_keywords,
        }
        if no_ai:
            overrides.update(use_classifier=False, use_embeddings=False)
        if max_iterations is not None:
            overrides["max_iterations"] = max_iterations
        opts = CategorizationOptions.from_env(**overrides)
        summary = run_categorization(user_id, opts, database_url=database_url)
    except (ValueError, RuntimeError) as e:
        return _fail("categorize", e)
    _emit(summary.to_dict())
    return 0


def cmd_refine(user_id: str, *, database_url: str | None = None, dry_run: bool = False) -> int:
    from .api import refine_context

    try:
        result = refine_context(user_id, dry_run=dry_run, database_url=database_url)
    except (ValueError, RuntimeError) as e:
        return _fail("refine", e)
    _emit(result.to_dict())
    return 0


def cmd_review(
    user_id: str,
    *,
    database_url: str | None = None,
    min_confidence: float | None = None,
    max_confidence: float | None = None,
) -> int:
    from .api import review_low_confidence
    from .config import ReviewOptions

    try:
        overrides: dict[str, Any] = {}
        if min_confidence is not None:
            overrides["min_confidence"] = min_confidence
        if max_confidence is not None:
            overrides["max_confidence"] = max_confidence
        result = review_low_confidence(
            user_id, ReviewOptions.from_env(**overrides), database_url=database_url
        )
    except (ValueError, RuntimeError) as e:
        return _fail("review", e)
    _emit(result.to_dict())
    return 0


def cmd_recurring(
    user_id: str,
    *,
    database_url: str | None = None,
    as_of: str | None = None,
) -> int:
    from .api import detect_recurring

    try:
        candidates = detect_recurring(
            user_id, database_url=database_url, as_of=_parse_as_of(as_of)
        )
    except (ValueError, RuntimeError) as e:
        return _fail("recurring", e)
    _emit({"count": len(candidates), "candidates": [c.to_dict() for c in candidates]})
    return 0


def cmd_variable_spending(
    user_id: str,
    *,
    database_url: str | None = None,
    as_of: str | None = None,
    by_merchant: bool = False,
    save: bool = False,
) -> int:
    from .api import detect_variable_spending, save_variable_spending_patterns
    from .config import VariableSpendingConfig

    try:
        if save and by_merchant:
            raise ValueError("Invalid input: --save cannot be combined with --by-merchant")
        cfg = VariableSpendingConfig.from_env(group_by_merchant=by_merchant)
        results = detect_variable_spending(
            user_id, cfg, database_url=database_url, as_of=_parse_as_of(as_of)
        )
        saved = (
            save_variable_spending_patterns(user_id, results, database_url=database_url)
            if save
            else 0
        )
    except (ValueError, RuntimeError) as e:
        return _fail("variable-spending", e)
    _emit({"count": len(results), "saved": saved, "patterns": [r.to_dict() for r in results]})
    return 0


def cmd_merge_candidates(*, threshold: float = 0.75, database_url: str | None = None) -> int:
    from dataclasses import asdict

    from .api import find_merge_candidates

    try:
        candidates = find_merge_candidates(threshold, database_url=database_url)
    except (ValueError, RuntimeError) as e:
        return _fail("merge-candidates", e)
    _emit({"count": len(candidates), "candidates": [asdict(c) for c in candidates]})
    return 0


def cmd_merge(
    pairs: list[str],
    *,
    database_url: str | None = None,
    auto: bool = False,
    threshold: float = 0.75,
) -> int:
    """Merge ``FIRST:SECOND`` id pairs, or every duplicate chain with ``auto``."""

    from dataclasses import asdict

    from .api import auto_merge_duplicates, merge_merchants

    try:
        if auto:
            if pairs:
                raise ValueError("Invalid input: pass either pairs or --auto, not both")
            results = auto_merge_duplicates(threshold, database_url=database_url)
        else:
            if not pairs:
                raise ValueError("Invalid input: at least one FIRST:SECOND pair is required")
            parsed: list[tuple[int, int]] = []
            for raw in pairs:
                first, sep, second = raw.partition(":")
                if not sep or not first.strip().isdigit() or not second.strip().isdigit():
                    raise ValueError(f"Invalid input: pair must look like 12:34, got {raw!r}")
                parsed.append((int(first), int(second)))
            results = merge_merchants(parsed, database_url=database_url)
    except (ValueError, RuntimeError) as e:
        return _fail("merge", e)
    merged = sum(1 for r in results if not r.skipped)
    _emit({"merged": merged, "results": [asdict(r) for r in results]})
    return 0


def cmd_seed_categories(
    *,
    database_url: str | None = None,
    user_id: str | None = None,
    file: Path | None = None,
) -> int:
    from .api import seed_categories

    try:
        created = seed_categories(database_url=database_url, user_id=user_id, path=file)
    except (ValueError, RuntimeError, OSError) as e:
        return _fail("seed-categories", e)
    _emit({"created": created})
    return 0


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Categorize bank transactions and detect recurring and habitual spending. "
        "Loads DATABASE_URL and OPENAI_API_KEY from a local .env before running."
    ),
)

# Module-level option objects to satisfy ruff B008 (no calls in parameter
# defaults).
USER_ID_OPTION: OptionInfo = typer.Option(..., "--user-id", help="Owner of the transactions.")
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    None, help="Override DATABASE_URL (falls back to env var)."
)
AS_OF_OPTION: OptionInfo = typer.Option(
    None, help="Reference date (YYYY-MM-DD); defaults to today."
)
THRESHOLD_OPTION: OptionInfo = typer.Option(
    0.75, min=0.0, max=1.0, help="Minimum name similarity in [0, 1]."
)
PAIRS_ARGUMENT = typer.Argument(None, help="Merchant id pairs as FIRST:SECOND.")
SEED_FILE_OPTION: OptionInfo = typer.Option(
    None,
    "--file",
    help="Seed JSON to load instead of the packaged Dutch taxonomy.",
    dir_okay=False,
    file_okay=True,
    exists=True,
    readable=True,
)


@app.command("categorize")
def categorize_cmd(
    user_id: str = USER_ID_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
    recheck: bool = typer.Option(
        False, help="Re-check transactions that already have a category."
    ),
    no_ai: bool = typer.Option(False, help="Skip the classifier and embedding strategies."),
    learn_keywords: bool = typer.Option(
        False, help="Learn merchant keywords from confident classifier results."
    ),
    max_iterations: int | None = typer.Option(None, min=1, help="Cap on cascade passes."),
) -> None:
    """Run the categorization cascade for one user."""

    raise typer.Exit(
        cmd_categorize(
            user_id,
            database_url=database_url,
            recheck=recheck,
            no_ai=no_ai,
            learn_keywords=learn_keywords,
            max_iterations=max_iterations,
        )
    )


@app.command("refine")
def refine_cmd(
    user_id: str = USER_ID_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
    dry_run: bool = typer.Option(False, help="List the changes without writing them."),
) -> None:
    """Re-categorize by time of day, amount and merchant context."""

    raise typer.Exit(cmd_refine(user_id, database_url=database_url, dry_run=dry_run))


@app.command("review")
def review_cmd(
    user_id: str = USER_ID_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
    min_confidence: float | None = typer.Option(
        None, min=0.0, max=1.0, help="Lower bound of the confidence band (inclusive)."
    ),
    max_confidence: float | None = typer.Option(
        None, min=0.0, max=1.0, help="Upper bound of the confidence band (exclusive)."
    ),
) -> None:
    """Ask the classifier again about low-confidence categorizations."""

    raise typer.Exit(
        cmd_review(
            user_id,
            database_url=database_url,
            min_confidence=min_confidence,
            max_confidence=max_confidence,
        )
    )


@app.command("recurring")
def recurring_cmd(
    user_id: str = USER_ID_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
    as_of: str | None = AS_OF_OPTION,
) -> None:
    """List recurring-obligation candidates."""

    raise typer.Exit(cmd_recurring(user_id, database_url=database_url, as_of=as_of))


@app.command("variable-spending")
def variable_spending_cmd(
    user_id: str = USER_ID_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
    as_of: str | None = AS_OF_OPTION,
    by_merchant: bool = typer.Option(False, help="Split each category by merchant."),
    save: bool = typer.Option(False, help="Store the category-level results."),
) -> None:
    """Summarize habitual variable spending per category."""

    raise typer.Exit(
        cmd_variable_spending(
            user_id,
            database_url=database_url,
            as_of=as_of,
            by_merchant=by_merchant,
            save=save,
        )
    )


@app.command("merge-candidates")
def merge_candidates_cmd(
    threshold: float = THRESHOLD_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """List pairs of near-duplicate merchants."""

    raise typer.Exit(cmd_merge_candidates(threshold=threshold, database_url=database_url))


@app.command("merge")
def merge_cmd(
    pairs: list[str] | None = PAIRS_ARGUMENT,
    database_url: str | None = DATABASE_URL_OPTION,
    auto: bool = typer.Option(False, help="Merge every near-duplicate chain."),
    threshold: float = THRESHOLD_OPTION,
) -> None:
    """Merge merchant pairs, keeping the better-named merchant."""

    raise typer.Exit(
        cmd_merge(list(pairs or []), database_url=database_url, auto=auto, threshold=threshold)
    )


@app.command("seed-categories")
def seed_categories_cmd(
    database_url: str | None = DATABASE_URL_OPTION,
    user_id: str | None = typer.Option(
        None, help="Create the categories for one user instead of as system categories."
    ),
    file: Path | None = SEED_FILE_OPTION,
) -> None:
    """Load the default category taxonomy (safe to re-run)."""

    raise typer.Exit(cmd_seed_categories(database_url=database_url, user_id=user_id, file=file))


@app.callback()
def _root() -> None:
    """Load ``.env`` from the working directory and configure logging.

    Existing environment variables win over values from ``.env``.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    # Running as a module: `python -m transaction_intelligence.cli`
    main()
