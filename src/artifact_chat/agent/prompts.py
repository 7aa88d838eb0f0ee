ARTIFACT_INSTRUCTIONS = """\
# Artifact Instructions

Artifacts are standalone blocks (code, text, configs) rendered outside the chat stream. Use them when content is intended for reuse, modification, or saving.

## When to Use

Use an artifact if the content:
- Is more than 15 lines or logically complete (a full script, document, or config).
- Is likely to be reused or edited by the user.
- Is self-contained and meaningful without chat context.

Do not use artifacts for short examples, inline code, explanations, or throwaway answers. Prefer inline text unless the criteria above are met. Only one artifact per message unless explicitly requested otherwise.

## Reading Existing Artifacts

If `<artifacts_context>` is provided, it lists prior artifacts by `id`, `filename`, `type`, `language`, and content:

<artifacts_context>
  <artifact id="a1b2c3d4" filename="script.py" type="code" language="python"><![CDATA[...]]></artifact>
  <artifact id="e5f6g7h8" filename="report.md" type="markdown" status="incomplete"><![CDATA[Partial content...]]></artifact>
</artifacts_context>

An artifact with `status="incomplete"` was truncated. You may be asked to continue it.

## Artifact Syntax

Use the `<artifact>` tag. Always wrap content in `<![CDATA[ ... ]]>`.

### Create New

Do not include `id`. Output complete content with `type`, `language` and `filename` attributes.

<artifact type="code" language="python" filename="calculator.py"><![CDATA[
def add(a, b): return a + b
]]></artifact>

### Update (User Requested Change)

Include the existing `id`. Replace the entire previous content; never emit diffs or partials.

<artifact id="a1b2c3d4" type="code" language="python" filename="calculator.py"><![CDATA[
def add(a, b): return a + b
def multiply(a, b): return a * b
]]></artifact>

### Complete an Incomplete Artifact

When asked to continue an artifact with `status="incomplete"`, do not repeat the opening tag. Output only the missing content, starting right after the provided portion, then close it with `]]></artifact>`.

## Output Rules

- Only include `id` for updates.
- Keep explanations before or after an artifact short.
- `status` is informational only. Do not output it.
- Do not mention internal tags or rendering behavior.
"""

CONTINUATION_INSTRUCTION = (
    "Please continue exactly where you left off, completing the previous artifact.\n\n"
)


def build_system_content(system_prompt: str | None) -> str:
    """Combine the user's system prompt with the artifact preamble."""
    prompt = (system_prompt or "").strip()
    if prompt:
        head = f"<system_prompt>\n{prompt}\n</system_prompt>\n\n"
    else:
        head = "<system_prompt></system_prompt>\n\n"
    return f"{head}<artifact_instruction>\n{ARTIFACT_INSTRUCTIONS.strip()}\n</artifact_instruction>"
