"""Prompt templates and marker vocabulary.

Static data only: templates are filled with ``str.format`` by the modules
that call the LLM.
"""

# ---------------------------------------------------------------------------
# Scope markers
# ---------------------------------------------------------------------------
# Every bullet of a scope analysis starts with exactly one of these.

MARKER_IN_SCOPE = "☐"
MARKER_LOW_PRIORITY = "⏬"
MARKER_ALREADY_DONE = "✅"
MARKER_OUT_OF_SCOPE = "❌"
MARKER_QUESTION = "❓"
MARKER_ANSWERED = "💬"

SCOPE_ANALYSIS_HEADING = "Scope Analysis"
SHELL_STORIES_HEADING = "Shell Stories"
REMAINING_QUESTIONS_HEADING = "Remaining Questions"

PREVIOUS_ANALYSIS_LABEL = (
    "**Previous Scope Analysis (for reference - update markers as questions are answered):**"
)

OVERFLOW_COMMENT_PREFIX = (
    "**Note**: The Scope Analysis section was moved to this comment due to "
    "description size limits (43KB max).\n\n---\n\n"
)

# ---------------------------------------------------------------------------
# Screen analysis
# ---------------------------------------------------------------------------

SCREEN_ANALYSIS_SYSTEM_PROMPT = (
    "You are a UX analyst documenting screen designs for developers. "
    "List every visible element with its exact label and describe visible states. "
    "Take exact labels and component states from the layer outline when one is given. "
    "Keep what you see separate from what the design notes specify."
)

SCREEN_ANALYSIS_PROMPT = """\
Analyze the attached screen.

**Screen:** {name}
**Position:** {position}
{section_line}
## Design notes for this screen
{notes}

## Screen structure
Layer outline of the frame (component names, states, text):
{structure}

## Feature context
{context}

Describe the layout, every interactive element and its behavior, data shown,
validation or error states, and navigation to other screens. Output markdown only.
"""

# ---------------------------------------------------------------------------
# Scope analysis
# ---------------------------------------------------------------------------

SCOPE_ANALYSIS_SYSTEM_PROMPT = f"""\
You are a product analyst categorizing features found in screen analyses.

Only list features backed by a screen analysis or the feature context.
Prefix every bullet with exactly one marker:
- {MARKER_IN_SCOPE} in scope
- {MARKER_LOW_PRIORITY} low priority (later, phase 2, nice to have)
- {MARKER_ALREADY_DONE} already implemented
- {MARKER_OUT_OF_SCOPE} out of scope (explicitly declined)
- {MARKER_QUESTION} open question
- {MARKER_ANSWERED} question already answered in the context, followed by its answer

Group bullets under `### <Feature area>` headings by user workflow, link the
relevant screens under each area, and put cross-cutting questions under
`### {REMAINING_QUESTIONS_HEADING}`. Output only the markdown."""

SCOPE_ANALYSIS_PROMPT = """\
Produce a `## {heading}` section for the feature below.

## Screens (reading order)
{screen_list}

## Screen analyses
{analyses}

## Feature context
{context}
{previous}
"""

# ---------------------------------------------------------------------------
# Shell stories
# ---------------------------------------------------------------------------

SHELL_STORIES_SYSTEM_PROMPT = f"""\
You are a product manager turning a scope analysis into shell stories.

Write a prioritized markdown list. Each story is one top-level bullet of the form
"- `st001` **Title** - one sentence of user value", followed by nested bullets for
SCREENS (links), DEPENDENCIES, {MARKER_IN_SCOPE} items, {MARKER_LOW_PRIORITY} deferred items,
{MARKER_OUT_OF_SCOPE} exclusions and {MARKER_QUESTION} open questions.
Each story must deliver value on its own. Low-priority work goes at the end.
Output only the list."""

SHELL_STORIES_PROMPT = """\
## Scope analysis
{scope_analysis}

## Screens (reading order)
{screen_list}

## Screen analyses
{analyses}

## Feature context
{context}
"""
