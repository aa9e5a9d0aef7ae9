import argparse
import asyncio
import csv
import json
import time
from pathlib import Path

import httpx
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from bertnews.config import load_settings
from bertnews.constants import (
    DEFAULT_MIN_SCORE,
    DEFAULT_TOPK,
    PRECOMPUTE_PROGRESS_EVERY,
    SCORE_BATCH_API_URL,
    SCORE_BATCH_DEFAULT_LABELS,
)
from bertnews.errors import BertNewsError
from bertnews.inference import init_embedder
from bertnews.logging_config import configure_logging
from bertnews.scoring import article_text
from bertnews.service import PersonalizationService
from bertnews.store import Store

console = Console()


def load_rows(path: Path) -> list[dict]:
    """Read articles from a CSV (header row) or JSONL file."""
    if path.suffix.lower() == ".csv":
        with open(path, newline="", encoding="utf-8") as f:
            return list(csv.DictReader(f))
    rows = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                rows.append(json.loads(line))
    return rows


def article_id_from_row(row: dict) -> str:
    # Prefer stable guid/link, fall back to the title
    return str(row.get("guid") or row.get("link") or row.get("title") or "")


def parse_labels(values: list[str] | None) -> list[str]:
    labels = []
    for value in values or []:
        labels.extend(s.strip() for s in value.split(",") if s.strip())
    return labels or list(SCORE_BATCH_DEFAULT_LABELS)


async def precompute(args) -> None:
    """Embed articles that are not stored yet."""
    rows = load_rows(Path(args.file))
    if args.max_rows > 0:
        rows = rows[: args.max_rows]

    settings = load_settings()
    processed = skipped = 0
    with Store(args.db or settings.db_path) as store:
        embedder = init_embedder(settings.embedding_model_dir)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeRemainingColumn(),
            transient=False,
        ) as progress:
            task = progress.add_task("[cyan]Embedding articles...", total=len(rows))
            for row in rows:
                article_id = article_id_from_row(row)
                if not article_id or store.has_article(article_id):
                    skipped += 1
                    progress.advance(task)
                    continue
                title = row.get("title") or ""
                description = row.get("description") or ""
                text = article_text(title, description)
                vec = (await asyncio.to_thread(embedder.encode, [text]))[0]
                store.upsert_article(
                    article_id, title, description, row.get("link") or "", vec, int(time.time() * 1000)
                )
                processed += 1
                if (processed + skipped) % PRECOMPUTE_PROGRESS_EVERY == 0:
                    progress.console.print(f"[dim]Processed: {processed}, skipped: {skipped}[/]")
                progress.advance(task)

    console.print(
        f"[bold green]Done.[/] New embeddings: {processed}, existing skipped: {skipped}"
    )


async def score_batch(args) -> int:
    """Send articles to a running server and write one JSON line per result."""
    rows = load_rows(Path(args.file))
    labels = parse_labels(args.labels)
    body = {
        "labels": labels,
        "multi_label": True,
        "min_score": args.min_score,
        "articles": [
            {"index": r.get("index", i), "title": r.get("title"), "description": r.get("description")}
            for i, r in enumerate(rows)
        ],
    }
    async with httpx.AsyncClient(timeout=None) as client:
        resp = await client.post(args.api_url, json=body)
    if resp.status_code != 200:
        console.print(f"[red]API error {resp.status_code}: {resp.text}[/]")
        return 1
    data = resp.json()

    out_path = Path(args.output)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as out:
        for r in data["results"]:
            record = {
                "index": r["index"],
                "scores": r["scores"],
                "labelSetHash": data["labelSetHash"],
                "labels": labels,
            }
            out.write(json.dumps(record) + "\n")
    console.print(f"Wrote scores for {len(data['results'])} articles to {out_path}")
    return 0


async def rank(args) -> int:
    settings = load_settings()
    with Store(args.db or settings.db_path) as store:
        service = PersonalizationService(store, settings)
        try:
            result = await service.rank_embeddings(args.user_id, args.label_set_hash, topk=args.top)
        except BertNewsError as e:
            console.print(f"[red]Error: {e}[/]")
            return 1

    console.print(
        f"\n[bold green]Top {args.top} Personalized Articles for {args.user_id}[/]\n"
    )
    table = Table(show_header=True, header_style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Title")
    table.add_column("Why", style="dim italic")
    for item in result["items"]:
        score = item["score"]
        score_color = "green" if score > 0.6 else "yellow" if score > 0.4 else "white"
        why = ", ".join(
            f"{e['label']} {e['weight']:+.2f}" for e in item["explanation"][:3] if e["weight"]
        )
        title = item["title"] or item["link"] or item["id"]
        if item.get("exploration"):
            title = f"{title} [magenta](explore)[/]"
        table.add_row(f"[{score_color}]{score:.2f}[/{score_color}]", title, why)
    console.print(table)
    return 0


def read_list(args) -> int:
    settings = load_settings()
    with Store(args.db or settings.db_path) as store:
        service = PersonalizationService(store, settings)
        items = service.read_list(args.user_id)["items"]
    if not items:
        console.print(f"[yellow]No read history for {args.user_id}.[/]")
        return 0
    for item in items:
        mark = "[green]+[/]" if item["feedback"] == "like" else "[red]-[/]"
        console.print(f"{mark} [bold]{item['title'] or item['id']}[/bold]")
        if item["link"]:
            console.print(f"   [dim cyan]{item['link']}[/]")
    return 0


def serve(args) -> int:
    import uvicorn

    settings = load_settings()
    uvicorn.run("bertnews.main:app", host=args.host, port=args.port or settings.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="BERTnews personalization engine")
    parser.add_argument("--db", type=str, default=None, help="SQLite database path (default: DB_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", type=str, default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=None, help="Port (default: PORT)")

    p_pre = sub.add_parser("precompute", help="Embed and store articles from CSV/JSONL")
    p_pre.add_argument("file", help="CSV or JSONL with title/description/link/guid")
    p_pre.add_argument("--max-rows", type=int, default=0, help="0 = all rows")

    p_score = sub.add_parser("score-batch", help="Score articles against a running server")
    p_score.add_argument("file", help="JSONL or CSV with index/title/description")
    p_score.add_argument("--labels", "-l", action="append", help="Comma-separated labels (repeatable)")
    p_score.add_argument("--min-score", type=float, default=DEFAULT_MIN_SCORE)
    p_score.add_argument("--api-url", type=str, default=SCORE_BATCH_API_URL)
    p_score.add_argument("--output", "-o", type=str, default="out/zero_shot_scores.jsonl")

    p_rank = sub.add_parser("rank", help="Rank the stored corpus for a user")
    p_rank.add_argument("user_id")
    p_rank.add_argument("label_set_hash")
    p_rank.add_argument("--top", type=int, default=DEFAULT_TOPK)

    p_read = sub.add_parser("read-list", help="Show a user's read history")
    p_read.add_argument("user_id")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(load_settings().log_level)

    if args.command == "serve":
        return serve(args)
    if args.command == "precompute":
        asyncio.run(precompute(args))
        return 0
    if args.command == "score-batch":
        return asyncio.run(score_batch(args))
    if args.command == "rank":
        return asyncio.run(rank(args))
    return read_list(args)


if __name__ == "__main__":
    raise SystemExit(main())
