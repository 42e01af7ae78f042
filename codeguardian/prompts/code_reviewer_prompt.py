"""Prompt templates for reviewing diff chunks."""

REVIEW_PROMPT = """
## Pull request

Title: `{title}`

Description:
```
{description}
```

## Summary of changes in `{path}`

{file_summary}
{file_context}
--------------------------------
CHANGES TO REVIEW
--------------------------------
The lines below are numbered 1 to {line_count}. `+` lines were added, `-` lines
were removed and lines starting with a space are unchanged context.

```diff
{chunk}
```

--------------------------------
RESPONSE FORMAT (STRICT)
--------------------------------
- Only comment on lines that have an actual problem: bugs, security flaws,
  data races, missing error handling, risky patterns, unclear logic.
- Refer to lines by the numbers shown above, never by file line numbers.
- Write each comment as a line range followed by a colon, the comment on the
  next lines, and a line containing only `---` after it:

1-3:
Explain the problem and suggest a fix. Use ```suggestion blocks when the fix
fits in the commented lines.
---
7:
Another comment.
---

- A single line may be written as `7:` instead of `7-7:`.
- Do not restate what the code does and do not compliment it.
- If there is nothing to flag, respond with exactly `LGTM!`.
- Respond in `{language}`.
"""

FILE_CONTEXT_TEMPLATE = """
## Full content of `{path}` after the change

```
{content}
```
"""

LGTM_MARKERS = ("LGTM", "looks good to me")
