from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from ssr.contracts.schemas import Stakeholder, StakeholderKind
from ssr.errors import GroundTruthError, SSRError
from ssr.observability.logging import setup_json_logger
from ssr.settings import settings

console = Console()

app = typer.Typer(help="Safety Status Report retrieval CLI (queries/search/index/eval)")

# ── Sub-command groups ────────────────────────────────────────────────────────
index_app = typer.Typer(no_args_is_help=True, help="Vector index: load chunks, inspect collection")
eval_app  = typer.Typer(no_args_is_help=True, help="Offline RRF evaluation against labeled ground truth")

app.add_typer(index_app, name="index")
app.add_typer(eval_app, name="eval")


@app.callback()
def main():
    setup_json_logger("ssr", settings.log_level)


def _resolve_stakeholder(
    stakeholder_id: Optional[str],
    role: Optional[str],
    concerns: Optional[list[str]],
    language: str,
) -> Stakeholder:
    """--role builds a custom stakeholder; otherwise --stakeholder names a predefined one."""
    if role:
        return Stakeholder(
            id=stakeholder_id or "custom_cli",
            role=role,
            concerns=concerns or [],
            kind=StakeholderKind.CUSTOM,
        )
    from ssr.stakeholders import get_predefined_stakeholder

    if not stakeholder_id:
        raise typer.BadParameter("either --stakeholder or --role is required")
    try:
        return get_predefined_stakeholder(stakeholder_id, "en" if language == "en" else "ja")
    except KeyError as e:
        raise typer.BadParameter(str(e)) from e


def _load_stakeholders(path: Optional[Path], language: str) -> list[Stakeholder]:
    if path is not None:
        from ssr.evaluation.evaluator import load_stakeholders
        return load_stakeholders(path)
    from ssr.stakeholders import get_predefined_stakeholders
    return list(get_predefined_stakeholders("en" if language == "en" else "ja"))


def _build_retriever(chunks: Optional[Path], namespace: Optional[str], verbose: bool = True):
    """Qdrant-backed retriever, or an in-memory one preloaded from --chunks."""
    from ssr.retrieval.rrf_fusion import build_retriever

    if chunks is None:
        return build_retriever()

    from ssr.retrieval.embedder import get_embedder
    from ssr.retrieval.index_runner import load_namespace
    from ssr.retrieval.vector_index import InMemoryVectorIndex

    if not namespace:
        raise typer.BadParameter("--namespace is required with --chunks")
    index = InMemoryVectorIndex()
    result = load_namespace(namespace, chunks, embedder=get_embedder(), index=index)
    if verbose:
        rprint(f"[dim]In-memory index: {result.upserted} chunks in {namespace}[/dim]")
    return build_retriever(index=index)


# ═══════════════════════════════════════════════════════════════════════════════
# QUERY / SIZING / SPARSE COMMANDS
# ═══════════════════════════════════════════════════════════════════════════════

@app.command("queries")
def queries_cmd(
    stakeholder: Optional[str] = typer.Option(None, "--stakeholder", "-s", help="Predefined stakeholder id"),
    role: Optional[str] = typer.Option(None, "--role", help="Custom stakeholder role"),
    concern: Optional[list[str]] = typer.Option(None, "--concern", "-c", help="Custom concern (repeatable)"),
    language: str = typer.Option("ja", "--language", help="ja|en predefined set"),
    max_queries: int = typer.Option(settings.MAX_QUERIES, "--max-queries"),
    json_output: bool = typer.Option(False, "--json"),
):
    """
    Show the enhanced queries generated for a stakeholder.

    Examples:
        ssr queries -s cxo
        ssr queries --role "品質保証マネージャー" -c "品質基準" -c "リスク管理"
    """
    from ssr.contracts.schemas import QueryEnhancementConfig
    from ssr.query.classifier import classify_stakeholder
    from ssr.query.enhancer import describe_query_enhancement

    s = _resolve_stakeholder(stakeholder, role, concern, language)
    record = describe_query_enhancement(s, QueryEnhancementConfig(max_queries=max_queries))

    if json_output:
        typer.echo(json.dumps(record, indent=2, ensure_ascii=False))
        return

    analysis = classify_stakeholder(s)
    rprint(f"\n[bold cyan]{s.id}[/bold cyan] ({s.kind.value}) {s.role}")
    rprint(f"  Category : [green]{analysis.category}[/green]"
           f"  Field: [green]{analysis.field or '-'}[/green]"
           f"  Level: [green]{analysis.level or '-'}[/green]")
    rprint(f"  Original : [dim]{record['original_query']}[/dim]\n")

    table = Table(show_lines=True)
    table.add_column("#", justify="right", style="dim", width=3)
    table.add_column("Query", max_width=90)
    table.add_column("Len", justify="right", width=5)
    for i, q in enumerate(record["enhanced_queries"], 1):
        table.add_row(str(i), q, str(len(q)))
    console.print(table)


@app.command("dynamic-k")
def dynamic_k_cmd(
    total_chunks: int = typer.Option(..., "--total-chunks", "-n", min=0),
    store: str = typer.Option(settings.VECTOR_STORE, "--store", help="qdrant|memory"),
    stakeholder: Optional[str] = typer.Option(None, "--stakeholder", "-s"),
    role: Optional[str] = typer.Option(None, "--role"),
    concern: Optional[list[str]] = typer.Option(None, "--concern", "-c"),
    language: str = typer.Option("ja", "--language"),
):
    """
    Show dynamic K for one stakeholder, or for every predefined stakeholder.

    Examples:
        ssr dynamic-k -n 1000
        ssr dynamic-k -n 250 -s technical-fellows --store memory
    """
    from ssr.query.classifier import classify_stakeholder
    from ssr.retrieval.dynamic_k import DynamicKConfig, get_dynamic_k, get_stakeholder_ratio

    if stakeholder or role:
        targets = [_resolve_stakeholder(stakeholder, role, concern, language)]
    else:
        targets = _load_stakeholders(None, language)

    config = DynamicKConfig.from_settings()
    table = Table(title=f"Dynamic K (n={total_chunks}, store={store})", show_lines=True)
    table.add_column("Stakeholder", style="cyan")
    table.add_column("Category")
    table.add_column("Ratio", justify="right")
    table.add_column("K", justify="right", style="green")
    for s in targets:
        table.add_row(
            s.id,
            classify_stakeholder(s).category,
            f"{get_stakeholder_ratio(s):.2f}",
            str(get_dynamic_k(total_chunks, s, store, config)),
        )
    console.print(table)


@app.command("sparse")
def sparse_cmd(
    text: str = typer.Option(..., "--text", "-t"),
    lite: bool = typer.Option(False, "--lite", help="Skip morphological analysis"),
    top: int = typer.Option(20, "--top", help="Terms to show"),
):
    """
    Show the sparse vector terms and weights for a text.

    Examples:
        ssr sparse -t "H-104 ハザードの残留リスク評価"
    """
    from ssr.retrieval.sparse_vector import build_sparse_vector_builder, describe_sparse_vector

    builder = build_sparse_vector_builder()
    weights = builder.lite_term_weights(text) if lite else builder.term_weights(text)
    vector = builder.create_sparse_vector_lite(text) if lite else builder.create_sparse_vector_auto(text)
    info = describe_sparse_vector(vector, text)

    rprint(f"\n[bold cyan]Sparse vector[/bold cyan] "
           f"({'lite' if lite or not builder.morphology_ready else 'morphological'})")
    for k, v in info.items():
        rprint(f"  {k}: [green]{v}[/green]")

    table = Table(show_lines=False)
    table.add_column("Term", style="cyan")
    table.add_column("Weight", justify="right")
    for term, w in sorted(weights.items(), key=lambda kv: -kv[1])[:top]:
        table.add_row(term, f"{w:.3f}")
    console.print(table)


# ═══════════════════════════════════════════════════════════════════════════════
# SEARCH
# ═══════════════════════════════════════════════════════════════════════════════

@app.command("search")
def search_cmd(
    namespace: Optional[str] = typer.Option(None, "--namespace", help="Default: stakeholder id [+ _user]"),
    user: Optional[str] = typer.Option(None, "--user", help="User identifier for the namespace"),
    stakeholder: Optional[str] = typer.Option(None, "--stakeholder", "-s"),
    role: Optional[str] = typer.Option(None, "--role"),
    concern: Optional[list[str]] = typer.Option(None, "--concern", "-c"),
    language: str = typer.Option("ja", "--language"),
    hybrid: bool = typer.Option(settings.ENABLE_HYBRID_SEARCH, "--hybrid/--dense"),
    chunks: Optional[Path] = typer.Option(
        None, "--chunks", exists=True, help="Load chunks JSONL into an in-memory index first",
    ),
    debug: bool = typer.Option(False, "--debug"),
    show_text: bool = typer.Option(True, "--show-text/--no-text"),
    json_output: bool = typer.Option(False, "--json"),
):
    """
    Run the adaptive multi-query RRF search for a stakeholder.

    Examples:
        ssr search -s cxo --user u123
        ssr search -s technical-fellows --namespace demo --chunks data/chunks/kb.jsonl --hybrid
    """
    from ssr.retrieval.rrf_fusion import generate_namespace

    s = _resolve_stakeholder(stakeholder, role, concern, language)
    ns = namespace or generate_namespace(s.id, user)
    retriever = _build_retriever(chunks, ns, verbose=not json_output)
    try:
        result = retriever.search(s, ns, enable_hybrid=hybrid, debug=debug)
    finally:
        retriever.close()

    meta = result.metadata
    if json_output:
        typer.echo(json.dumps({
            "metadata": meta.__dict__,
            "statistics": result.statistics.__dict__,
            "chunks": [c.model_dump() for c in result.to_retrieved_chunks()],
        }, indent=2, ensure_ascii=False, default=str))
        return

    rprint(f"\n[bold cyan]RRF search[/bold cyan] {s.id} @ {ns} "
           f"[dim]({'hybrid' if meta.hybrid_search_enabled else 'dense'}, "
           f"search_id={meta.search_id})[/dim]")
    rprint(f"  Chunks : {meta.total_chunks}  K: [green]{meta.dynamic_k}[/green]"
           f"  search_k: {meta.search_k}  took: {meta.search_duration_ms} ms")
    for i, q in enumerate(meta.queries_used, 1):
        rprint(f"  Q{i}: [dim]{q}[/dim]")

    if meta.error:
        rprint(f"\n[red]Search failed ({meta.error}); see logs for search_id={meta.search_id}[/red]")
        raise typer.Exit(code=1)
    if not result.documents:
        rprint("[yellow]No results found.[/yellow]")
        return

    table = Table(show_lines=True)
    table.add_column("#", justify="right", style="dim", width=3)
    table.add_column("RRF", justify="right", width=8)
    table.add_column("Chunk ID", style="cyan", max_width=35)
    table.add_column("File", max_width=30)
    table.add_column("Hit by", justify="right", width=6)
    if show_text:
        table.add_column("Text preview", max_width=60)
    for i, doc in enumerate(result.documents, 1):
        row = [str(i), f"{doc.rrf_score:.4f}", doc.id, doc.file_name, str(doc.query_coverage)]
        if show_text:
            row.append(doc.content[:120].replace("\n", " "))
        table.add_row(*row)
    console.print(table)

    stats = result.statistics
    rprint(f"\n[bold]Returned[/bold] {stats.total_unique_documents}/{meta.dynamic_k}"
           f"  avg coverage={stats.average_query_coverage:.2f}"
           f"  K achievement={meta.k_achievement_rate * 100:.1f}%")
    if meta.failed_queries:
        rprint(f"[yellow]Failed queries: {meta.failed_queries}[/yellow]")


# ═══════════════════════════════════════════════════════════════════════════════
# INDEX COMMANDS
# ═══════════════════════════════════════════════════════════════════════════════

@index_app.command("load")
def index_load(
    namespace: str = typer.Option(..., "--namespace", help="Target namespace, e.g. cxo_u123"),
    chunks: Path = typer.Option(..., "--chunks", exists=True, help="Chunks .jsonl file or directory"),
    sparse: bool = typer.Option(True, "--sparse/--no-sparse", help="Store sparse vectors for hybrid search"),
    upsert_batch: int = typer.Option(256, "--upsert-batch"),
    force_reindex: bool = typer.Option(False, "--force-reindex", help="Drop the collection first"),
):
    """
    Embed chunks and load them into a Qdrant namespace.

    Unchanged chunks (same content hash) are skipped.

    Examples:
        ssr index load --namespace cxo_u123 --chunks data/chunks/kb.jsonl
    """
    from ssr.retrieval.embedder import get_embedder
    from ssr.retrieval.index_runner import load_namespace
    from ssr.retrieval.qdrant_index import get_index

    rprint(f"[bold cyan]Loading namespace[/bold cyan] {namespace} from: {chunks}")
    rprint(f"  Model  : [green]{settings.EMBED_MODEL}[/green]")
    rprint(f"  Qdrant : [green]{settings.QDRANT_MODE}[/green] → "
           f"{settings.QDRANT_PATH if settings.QDRANT_MODE == 'embedded' else settings.QDRANT_URL}")

    embedder = get_embedder()
    index = get_index(vector_dim=embedder.embedding_dim)

    if force_reindex and index.collection_exists():
        rprint("[yellow]--force-reindex: dropping existing collection...[/yellow]")
        index.delete_collection()

    try:
        result = load_namespace(
            namespace, chunks,
            embedder=embedder, index=index,
            with_sparse=sparse, upsert_batch_size=upsert_batch,
        )
    finally:
        index.close()

    info = result.collection_info
    rprint(f"\n[bold]Collection:[/bold] {info.get('name')}")
    rprint(f"  Points  : [green]{info.get('points_count', 'N/A')}[/green]")
    if result.chunks_read == 0:
        rprint("[red]No chunks read.[/red]")
        raise typer.Exit(code=1)
    rprint(f"\n[bold green]✓ Done.[/bold green] read={result.chunks_read} "
           f"upserted={result.upserted} skipped={result.skipped} sparse={result.sparse}")


@index_app.command("info")
def index_info(
    namespace: Optional[str] = typer.Option(None, "--namespace", help="Also count this namespace"),
):
    """Show Qdrant collection and embedding cache statistics."""
    from ssr.retrieval.embedder import get_embedder
    from ssr.retrieval.qdrant_index import get_index

    embedder = get_embedder()
    index = get_index(vector_dim=embedder.embedding_dim)

    rprint("\n[bold cyan]Qdrant Collection[/bold cyan]")
    for k, v in index.collection_info().items():
        rprint(f"  {k}: [green]{v}[/green]")
    if namespace:
        rprint(f"  namespace {namespace}: [green]{index.describe_stats(namespace).record_count}[/green] chunks")

    rprint("\n[bold cyan]Embedding Cache[/bold cyan]")
    for k, v in embedder.cache_stats().items():
        rprint(f"  {k}: [green]{v}[/green]")

    index.close()


# ═══════════════════════════════════════════════════════════════════════════════
# EVAL COMMANDS
# ═══════════════════════════════════════════════════════════════════════════════

@eval_app.command("show-queries")
def eval_show_queries(
    stakeholders: Optional[Path] = typer.Option(None, "--stakeholders", exists=True, help="Stakeholder JSON list"),
    language: str = typer.Option("ja", "--language"),
):
    """Print the queries each stakeholder would issue."""
    from ssr.evaluation.evaluator import show_queries

    for sid, queries in show_queries(_load_stakeholders(stakeholders, language)).items():
        rprint(f"\n[bold cyan]{sid}[/bold cyan]")
        for i, q in enumerate(queries, 1):
            rprint(f"  {i}. {q}")


@eval_app.command("export-csv")
def eval_export_csv(
    output: Path = typer.Option(..., "--output", "-o"),
    stakeholders: Optional[Path] = typer.Option(None, "--stakeholders", exists=True),
    language: str = typer.Option("ja", "--language"),
    namespace: Optional[str] = typer.Option(None, "--namespace", help="Same namespace for every stakeholder"),
    user: Optional[str] = typer.Option(None, "--user", help="Per-stakeholder namespace suffix"),
    k: Optional[int] = typer.Option(None, "--k", help="Fixed K instead of dynamic K"),
):
    """Retrieve per stakeholder and write a CSV for relevance labeling."""
    from ssr.evaluation.evaluator import export_for_labeling
    from ssr.retrieval.rrf_fusion import build_retriever

    retriever = build_retriever()
    try:
        written = export_for_labeling(
            retriever, _load_stakeholders(stakeholders, language), output,
            namespace=namespace, user_identifier=user, fixed_k=k,
        )
    except SSRError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    finally:
        retriever.close()
    rprint(f"[bold green]✓[/bold green] {written} rows → {output}")


@eval_app.command("export-all-csv")
def eval_export_all_csv(
    namespace: str = typer.Option(..., "--namespace"),
    output: Path = typer.Option(..., "--output", "-o"),
    priority: Optional[Path] = typer.Option(None, "--priority", exists=True, help="File-priority sheet (CSV)"),
    stakeholder_ids: Optional[list[str]] = typer.Option(None, "--stakeholder", "-s"),
):
    """Write every chunk of a namespace with one relevance column per stakeholder."""
    from ssr.evaluation.labeling import STAKEHOLDER_COLUMNS, export_all_chunks_to_csv, load_priority_mapping
    from ssr.retrieval.embedder import get_embedder
    from ssr.retrieval.qdrant_index import get_index

    index = get_index(vector_dim=get_embedder().embedding_dim)
    try:
        chunks = sorted(
            index.iter_chunks(namespace),
            key=lambda c: (c.get("file_name", ""), c.get("chunk_index", 0)),
        )
    finally:
        index.close()
    if not chunks:
        rprint(f"[red]Namespace {namespace} has no chunks.[/red]")
        raise typer.Exit(code=1)

    mapping = load_priority_mapping(priority) if priority else None
    written = export_all_chunks_to_csv(
        chunks, stakeholder_ids or list(STAKEHOLDER_COLUMNS), output, mapping,
    )
    rprint(f"[bold green]✓[/bold green] {written} chunks → {output}")


@eval_app.command("convert-csv")
def eval_convert_csv(
    csv_path: Path = typer.Argument(..., exists=True),
    output: Path = typer.Option(..., "--output", "-o"),
    description: str = typer.Option("", "--description"),
    wide: bool = typer.Option(False, "--wide", help="Input is an all-chunks CSV"),
    chunk_id_prefix: bool = typer.Option(False, "--chunk-id-prefix", help="Prepend <stakeholder>_ to chunk ids (wide only)"),
):
    """Convert a labeled CSV into ground-truth JSON."""
    from ssr.evaluation.labeling import (
        convert_all_chunks_csv_to_ground_truth,
        convert_labeled_csv_to_ground_truth,
    )

    try:
        if wide:
            gt = convert_all_chunks_csv_to_ground_truth(csv_path, output, description, chunk_id_prefix)
        else:
            gt = convert_labeled_csv_to_ground_truth(csv_path, output, description)
    except GroundTruthError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    table = Table(title="Ground truth", show_lines=False)
    table.add_column("Query ID", style="cyan")
    table.add_column("Stakeholder")
    table.add_column("Relevant", justify="right", style="green")
    for entry in gt.entries:
        table.add_row(entry.query_id, entry.stakeholder_id or "-", str(len(entry.relevant_chunks)))
    console.print(table)
    rprint(f"[bold green]✓[/bold green] → {output}")


@eval_app.command("evaluate")
def eval_evaluate(
    ground_truth: Path = typer.Option(..., "--ground-truth", "-g", exists=True),
    stakeholders: Optional[Path] = typer.Option(None, "--stakeholders", exists=True),
    language: str = typer.Option("ja", "--language"),
    namespace: Optional[str] = typer.Option(None, "--namespace"),
    user: Optional[str] = typer.Option(None, "--user"),
    k: Optional[int] = typer.Option(None, "--k", help="Fixed K instead of dynamic K"),
    output_dir: Path = typer.Option(settings.eval_output_dir, "--output-dir"),
):
    """
    Evaluate RRF retrieval against ground truth and write JSON + text reports.

    Examples:
        ssr eval evaluate -g data/evaluation/ground-truth.json --user u123
    """
    from ssr.evaluation.evaluator import evaluate_rrf, write_report
    from ssr.evaluation.labeling import load_ground_truth
    from ssr.evaluation.metrics import format_evaluation_report
    from ssr.retrieval.rrf_fusion import build_retriever

    try:
        gt = load_ground_truth(ground_truth)
    except GroundTruthError as e:
        rprint(f"[red]{e}[/red]")
        for err in e.errors:
            rprint(f"  [red]- {err}[/red]")
        raise typer.Exit(code=1)

    retriever = build_retriever()
    try:
        report = evaluate_rrf(
            retriever, _load_stakeholders(stakeholders, language), gt,
            namespace=namespace, user_identifier=user, fixed_k=k,
        )
    except SSRError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    finally:
        retriever.close()

    typer.echo(format_evaluation_report(report))
    json_path, text_path = write_report(report, output_dir)
    rprint(f"[bold green]✓[/bold green] {json_path}\n[bold green]✓[/bold green] {text_path}")


@eval_app.command("template")
def eval_template(
    output: Path = typer.Option(..., "--output", "-o"),
):
    """Write a ground-truth JSON template."""
    from ssr.evaluation.labeling import generate_ground_truth_template

    generate_ground_truth_template(output)
    rprint(f"[bold green]✓[/bold green] template → {output}")


if __name__ == "__main__":
    app()
