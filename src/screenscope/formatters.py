"""Format pipeline results as markdown for LLM consumption."""

from typing import Optional

from .pipeline import PipelineResult

_ACTION_HEADLINES = {
    "proceed": "Shell stories written",
    "clarify": "Scope analysis needs answers",
    "still_needs_clarification": "Scope analysis still has open questions",
}

_STOPPED_ACTIONS = ("clarify", "still_needs_clarification")


def format_failure(result: PipelineResult) -> str:
    phase = result.failed_phase.value if result.failed_phase else "unknown"
    lines = [f"## Failed during {phase}\n"]
    lines.append(f"- **Item:** {result.item_id}")
    if result.error_code:
        lines.append(f"- **Error code:** `{result.error_code}`")
    if result.error:
        lines.append(f"- **Error:** {result.error}")
    if result.screens_cached or result.screens_analyzed:
        lines.append(
            f"- **Progress kept:** {result.screens_analyzed} analyzed, "
            f"{result.screens_cached} cached (reused on retry)"
        )
    return "\n".join(lines)


def format_screen_summary(result: PipelineResult) -> list[str]:
    lines = [
        f"- **Design file:** `{result.file_key}`",
        f"- **Screens:** {result.screens_total} "
        f"({result.screens_analyzed} analyzed, {result.screens_cached} from cache)",
    ]
    if result.cache_invalidated:
        lines.append("- **Cache:** rebuilt (design file changed or first run)")
    if result.skipped_screens:
        lines.append(
            f"- **Skipped:** {len(result.skipped_screens)} screen(s) without an image: "
            + ", ".join(f"`{s}`" for s in result.skipped_screens)
        )
    if result.failed_screens:
        lines.append(f"- **Failed:** {len(result.failed_screens)} screen(s)")
        for screen_id, reason in result.failed_screens.items():
            lines.append(f"  - `{screen_id}`: {reason}")
    if result.unassociated_note_ids:
        lines.append(f"- **Unplaced notes:** {len(result.unassociated_note_ids)}")
    if result.comment_threads:
        lines.append(
            f"- **Comment threads:** {result.comment_threads_matched} of "
            f"{result.comment_threads} placed on screens"
        )
    if result.comment_refreshed_screens:
        lines.append(
            f"- **Re-analyzed for new comments:** {len(result.comment_refreshed_screens)} screen(s)"
        )
    return lines


def format_pipeline_result(result: PipelineResult, headline: Optional[str] = None) -> str:
    """Summary of a shell-story or scope-analysis run."""
    if not result.success:
        return format_failure(result)

    if result.action in _STOPPED_ACTIONS or headline is None:
        headline = _ACTION_HEADLINES.get(result.action or "", "Done")
    lines = [f"## {headline}\n", f"- **Item:** {result.item_id}"]
    lines.extend(format_screen_summary(result))
    lines.append(f"- **Unanswered questions:** {result.question_count}")
    if result.story_count:
        lines.append(f"- **Stories:** {result.story_count}")
    if result.overflowed:
        lines.append("- **Note:** scope analysis moved to a comment to fit the size limit")
    if result.size_warning:
        lines.append(f"- **Warning:** {result.size_warning}")

    if result.action in _STOPPED_ACTIONS:
        lines.append(
            "\nAnswer the ❓ questions in the Scope Analysis section of the item, "
            "then run again."
        )
        lines.append(f"\n---\n\n{result.scope_analysis}")
    elif result.shell_stories:
        lines.append(f"\n---\n\n{result.shell_stories}")
    elif result.scope_analysis:
        lines.append(f"\n---\n\n{result.scope_analysis}")
    return "\n".join(lines)
