from __future__ import annotations

import logging
import sys
from typing import Dict, List, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress
from rich.table import Table

from .answer_key import load_answer_key
from .bubbles import read_bubbles
from .collaborators import OpenCvQrDecoder, TesseractOcr
from .config_io import load_config
from .errors import GraderError
from .grade_core import BatchResult, grade_batch, override_answers, resolve_unidentified
from .identify import GradingContext, IdentificationResolver
from .images import load_pages
from .orientation import detect_orientation
from .roster import Roster, load_roster
from .store import JsonGradeStore, export_csv
from .visualize_core import overlay_page

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="scantron-grader: grade scanned answer sheets, resolve unidentified pages, review stats.",
)

console = Console()


def _fail(what: str, e: Exception, code: int = 2) -> None:
    rprint(f"[red]{what}:[/red] {e}")
    raise typer.Exit(code=code)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log per-page decisions"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


# ------------------------------ GRADE --------------------------------
@app.command()
def grade(
    inputs: List[str] = typer.Argument(..., help="Scanned PDFs and/or page images"),
    assignment: str = typer.Option(..., "--assignment", "-a", help="Assignment id"),
    key: str = typer.Option(..., "--key", "-k", help="Answer key (.txt letters, or .yaml/.json with versions)"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Config file (.yaml/.yml or .json)"),
    roster_path: Optional[str] = typer.Option(None, "--roster", "-r", help="Roster (.csv or .yaml/.json)"),
    store_dir: str = typer.Option("grades", "--store-dir", "-s", help="Directory holding <assignment>-grades.json"),
    section: str = typer.Option("", "--section", help="Section id for OCR/manual identities"),
    version: str = typer.Option("A", "--version", help="Version assumed for pages identified by name"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Page worker threads (default from config)"),
    dpi: Optional[int] = typer.Option(None, "--dpi", help="PDF render DPI (default from config)"),
    ocr: bool = typer.Option(True, "--ocr/--no-ocr", help="Fall back to OCR of the printed name"),
    out_csv: Optional[str] = typer.Option(None, "--out-csv", "-o", help="Also write a per-student CSV"),
):
    """
    Grade scanned sheets and merge the results into the assignment's grade file.
    """
    try:
        cfg = load_config(config)
        answer_key = load_answer_key(key)
        roster = load_roster(roster_path) if roster_path else None
        pages = load_pages(inputs, dpi=dpi or cfg.dpi)
        context = GradingContext(assignment_id=assignment, section_id=section, version_id=version)
    except (GraderError, OSError) as e:
        _fail("Failed to load inputs", e)

    n_workers = workers or cfg.workers
    store = JsonGradeStore(store_dir)

    try:
        with IdentificationResolver(
            cfg.layout,
            OpenCvQrDecoder(),
            TesseractOcr() if ocr else None,
            settings=cfg.identification,
            max_pending_calls=n_workers,
        ) as resolver, Progress(console=console, transient=True) as progress:
            tasks: Dict[str, int] = {}

            def on_progress(stage: str, current: int, total: int) -> None:
                if stage not in tasks:
                    tasks[stage] = progress.add_task(stage, total=total)
                progress.update(tasks[stage], completed=current)

            result = grade_batch(
                pages, answer_key, context, resolver,
                store=store,
                roster=roster,
                template=cfg.layout,
                scoring=cfg.scoring,
                settings=cfg.identification,
                workers=n_workers,
                progress=on_progress,
            )
    except GraderError as e:
        _fail("Grading failed", e)

    _print_batch(result)
    rprint(f"[green]Wrote grades:[/green] {store.path_for(assignment)}")
    if out_csv and result.grades is not None:
        rprint(f"[green]Wrote results:[/green] {export_csv(result.grades, out_csv)}")


def _print_batch(result: BatchResult) -> None:
    table = Table(title=f"{result.total_pages} page(s)")
    table.add_column("Page", justify="right")
    table.add_column("Student")
    table.add_column("Score", justify="right")
    table.add_column("Status")
    for r in result.records:
        status = "[yellow]review[/yellow]" if r.needs_review else "[green]ok[/green]"
        table.add_row(str(r.scantron_page_number), f"{r.student_id} ({r.identified_by})",
                      f"{r.raw_score}/{r.total_questions} ({r.percentage:.1f}%)", status)
    for p in result.unidentified:
        guess = f" OCR: {p.ocr_student_name}" if p.ocr_student_name else ""
        table.add_row(str(p.page_number), "-", "-", f"[red]{p.page_type}[/red]{guess}")
    console.print(table)


# ----------------------------- RESOLVE -------------------------------
@app.command()
def resolve(
    assignment: str = typer.Argument(..., help="Assignment id"),
    page: int = typer.Argument(..., help="Unidentified page number"),
    student: str = typer.Argument(..., help="Student id to assign the page to"),
    key: str = typer.Option(..., "--key", "-k", help="Answer key file"),
    store_dir: str = typer.Option("grades", "--store-dir", "-s"),
    version: str = typer.Option("A", "--version", help="Version the student took"),
    source: Optional[str] = typer.Option(None, "--source", help="Source file, when the page number is ambiguous"),
    roster_path: Optional[str] = typer.Option(None, "--roster", "-r"),
):
    """
    Assign an unidentified page to a student and grade it.
    """
    try:
        roster: Optional[Roster] = load_roster(roster_path) if roster_path else None
        record = resolve_unidentified(
            JsonGradeStore(store_dir), assignment, page, student, load_answer_key(key),
            version_id=version, source=source, roster=roster,
        )
    except (GraderError, OSError) as e:
        _fail("Resolve failed", e)
    rprint(f"[green]Page {page} -> {student}:[/green] "
           f"{record.raw_score}/{record.total_questions} ({record.percentage:.1f}%)")


# ----------------------------- OVERRIDE ------------------------------
@app.command()
def override(
    assignment: str = typer.Argument(..., help="Assignment id"),
    student: str = typer.Argument(..., help="Student id"),
    answers: List[str] = typer.Option(..., "--set", help="Corrections as Q=LETTER, e.g. --set 3=B (empty clears)"),
    key: str = typer.Option(..., "--key", "-k", help="Answer key file"),
    store_dir: str = typer.Option("grades", "--store-dir", "-s"),
):
    """
    Correct misread answers on a stored record and re-score it.
    """
    overrides: Dict[int, Optional[str]] = {}
    for item in answers:
        q, sep, letter = item.partition("=")
        if not sep or not q.strip().isdigit():
            rprint(f"[red]Bad --set value {item!r}; expected Q=LETTER[/red]")
            raise typer.Exit(code=2)
        overrides[int(q)] = letter.strip() or None

    try:
        record = override_answers(JsonGradeStore(store_dir), assignment, student, overrides, load_answer_key(key))
    except (GraderError, OSError) as e:
        _fail("Override failed", e)
    rprint(f"[green]{student}:[/green] {record.raw_score}/{record.total_questions} "
           f"({record.percentage:.1f}%) - {record.review_notes}")


# ------------------------------ STATS --------------------------------
@app.command()
def stats(
    assignment: str = typer.Argument(..., help="Assignment id"),
    store_dir: str = typer.Option("grades", "--store-dir", "-s"),
    questions: bool = typer.Option(False, "--questions/--no-questions", help="Show per-question table"),
):
    """
    Show the score summary, per-question results and pending pages.
    """
    try:
        grades = JsonGradeStore(store_dir).load(assignment)
    except GraderError as e:
        _fail("Cannot read grades", e)
    if grades is None:
        rprint(f"[yellow]No grades stored for {assignment}[/yellow]")
        raise typer.Exit(code=1)

    s = grades.stats
    summary = Table(title=f"{assignment}: {s.total_students} student(s)")
    for col in ("Average", "Median", "High", "Low", "Std dev"):
        summary.add_column(col, justify="right")
    summary.add_row(*(f"{v:.1f}" for v in (s.average_score, s.median_score, s.high_score,
                                            s.low_score, s.standard_deviation)))
    console.print(summary)

    if s.by_version:
        vt = Table(title="By version")
        vt.add_column("Version")
        vt.add_column("Students", justify="right")
        vt.add_column("Average", justify="right")
        for v, vs in s.by_version.items():
            vt.add_row(v, str(vs.count), f"{vs.average:.1f}")
        console.print(vt)

    if questions and s.by_question:
        qt = Table(title="By question")
        for col in ("Q", "Correct", "Incorrect", "Skipped", "% correct"):
            qt.add_column(col, justify="right")
        for qn, qs in s.by_question.items():
            qt.add_row(str(qn), str(qs.correct_count), str(qs.incorrect_count),
                       str(qs.skipped_count), f"{qs.percent_correct:.1f}")
        console.print(qt)

    review = [r.student_id for r in grades.records if r.needs_review]
    if review:
        rprint(f"[yellow]Needs review:[/yellow] {', '.join(review)}")
    for p in grades.unidentified_pages:
        hint = f" suggestions: {', '.join(p.suggested_students[:3])}" if p.suggested_students else ""
        rprint(f"[red]Unidentified page {p.page_number}[/red] ({p.page_type}, {p.source or '-'}){hint}")


# --------------------------- VISUALIZE -------------------------------
@app.command()
def visualize(
    input_path: str = typer.Argument(..., help="A scanned PDF or page image"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Config file (.yaml/.yml or .json)"),
    questions: int = typer.Option(..., "--questions", "-q", help="Number of questions on the sheet"),
    page: int = typer.Option(1, "--page", help="Page number to render (1-based)"),
    out_image: str = typer.Option("layout_overlay.png", "--out-image", "-o", help="Output overlay PNG"),
    dpi: Optional[int] = typer.Option(None, "--dpi", help="Render DPI"),
):
    """
    Overlay the layout regions (and what was read) on a page to verify placement.
    """
    try:
        cfg = load_config(config)
        pages = load_pages([input_path], dpi=dpi or cfg.dpi)
        target = next((p for p in pages if p.page_number == page), None)
        if target is None:
            rprint(f"[red]{input_path} has no page {page}[/red]")
            raise typer.Exit(code=2)
        upright = detect_orientation(target, cfg.layout, cfg.scoring).page
        readings = read_bubbles(upright, cfg.layout, questions, cfg.scoring)
        out = overlay_page(upright, cfg.layout, questions, out_image, readings)
    except (GraderError, OSError) as e:
        _fail(f"Visualization failed for {input_path}", e)

    rprint(f"[green]Wrote:[/green] {out}")


# ------------------------------- MAIN --------------------------------
def app_main() -> None:
    """Entry point for console_scripts."""
    try:
        app()
    except KeyboardInterrupt:
        rprint("\n[red]Interrupted[/red]")
        sys.exit(130)


if __name__ == "__main__":
    app_main()
