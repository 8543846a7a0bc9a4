from __future__ import annotations

from chainloop.models import WorkItem


DEFAULT_COMPLETION_KEYWORD = "TASK_FINISHED"


def _render_item(index: int, item: WorkItem) -> str:
    details = "\n".join(f"   {line}" for line in item.details) or "   No test steps provided."
    return f"""
### {index}. {item.title}
**Item:** {item.item_id}
**Issue:** {item.description or "No description provided."}
**Priority:** {item.priority}
**Category:** {item.category}

**Steps:**
{details}
""".strip()


def build_work_prompt(*, items: tuple[WorkItem, ...], context: str | None = None) -> str:
    rendered_items = "\n\n---\n\n".join(
        _render_item(index, item) for index, item in enumerate(items, start=1)
    )
    context_block = f"\n## Context\n{context.strip()}\n" if context and context.strip() else ""
    return f"""
# Analysis Request

The items below are still unresolved. Analyze each one and give concrete technical
recommendations for fixing it.
{context_block}
## Unresolved Items

{rendered_items}

## Response

For each item, provide:
1. Root cause analysis.
2. Specific code changes needed.
3. Step-by-step implementation instructions.

Format the response as a JSON array with one object per item, with the keys:
item_id, root_cause, technical_recommendations, implementation_steps, estimated_complexity.
""".strip()


def build_forward_prompt(
    *,
    response_text: str,
    add_instructions: bool,
    completion_keyword: str = DEFAULT_COMPLETION_KEYWORD,
) -> str:
    extra_instructions = ""
    if add_instructions:
        extra_instructions = f"""
IMPORTANT:
- Fix ALL issues identified, not just some.
- Make minimal changes that solve the problems.
- Preserve existing functionality while fixing the issues.
- After the fixes are complete and verified, say "{completion_keyword}".
"""
    return f"""
An analysis agent reviewed the unresolved items and recommended the fixes below:

{response_text.strip()}

Based on this analysis:
1. Implement the recommended fixes for ALL items.
2. Follow the existing code patterns.
3. Test your changes locally where possible.
4. Commit your changes with a clear message.
{extra_instructions}
When you have completed ALL fixes and verified them, say exactly `{completion_keyword}`.
""".strip()
