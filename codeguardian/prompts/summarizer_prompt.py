"""Prompt templates for file and pull request summaries."""

FILE_SUMMARY_PROMPT = """
## Pull request

Title: `{title}`

Description:
```
{description}
```

## Diff of `{path}`

```diff
{diff}
```

--------------------------------
INSTRUCTIONS
--------------------------------
Summarize the changes to this file in 100 words or fewer. Focus on behavior,
public interfaces and anything a reviewer should double-check. Do not
describe formatting.
{triage_instructions}
Respond in `{language}`.
"""

TRIAGE_INSTRUCTIONS = """
After the summary, add a line with a triage verdict:

[TRIAGE]: <NEEDS_REVIEW or APPROVED>

Use APPROVED only when the change is trivial: formatting, comments, typo
fixes, renaming a variable without changing behavior. When in doubt, use
NEEDS_REVIEW. Any change to logic or control flow is NEEDS_REVIEW.
"""

AGGREGATE_PROMPT = """
## Pull request

Title: `{title}`

Description:
```
{description}
```

## Per-file summaries

{file_summaries}

--------------------------------
INSTRUCTIONS
--------------------------------
Write a high-level summary of the pull request in 80 words or fewer,
followed by a markdown table with the columns `Files` and `Summary` that
groups files with similar changes together. Do not mention files that are not
listed above.
{unreviewed_note}
Respond in `{language}`.
"""

UNREVIEWED_NOTE = (
    "The following files changed but were not summarized: {paths}. "
    "Mention that they were not reviewed."
)

RELEASE_NOTES_PROMPT = """
## Pull request

Title: `{title}`

Description:
```
{description}
```

## Summary of changes

{summary}

--------------------------------
INSTRUCTIONS
--------------------------------
{release_notes_prompt}
Respond in `{language}`.
"""
