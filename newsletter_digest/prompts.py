from __future__ import annotations

from typing import Sequence

from .config import MAX_PROMPT_HTML_CHARS
from .models import ResolvedLink, Summary
from .utils import trim_text


def summary_user_prompt(html_content: str, links: Sequence[ResolvedLink]) -> str:
    links_context = "\n".join(
        f"Link {idx}: [{link.associated_text}]({link.final_url or link.tracked_url})"
        for idx, link in enumerate(links, start=1)
    )
    return f"""
Summarize this AI/tech newsletter into a concise, readable markdown format. Follow these rules:

1. For each main topic or news item, create a paragraph that:
   - Starts with the key subject/tool name as a link if available
   - Provides a clear, concise summary of what it is and why it matters
   - Preserves the exact phrasing when describing linked items

2. If a section discusses multiple tools or links, summarize the section content and list all associated links at the end.

3. Group related information together logically.

4. Output ONLY the markdown summary, no meta-commentary.

5. Preserve the verbatim text that was associated with each link in your summary.

HTML Content:
{trim_text(html_content, MAX_PROMPT_HTML_CHARS)}

Extracted Links:
{links_context}

Provide the summary now:
"""


def aggregation_user_prompt(summaries: Sequence[Summary]) -> str:
    combined = "\n\n---\n\n".join(
        f"## Newsletter {idx}\n\n{summary.markdown_content}" for idx, summary in enumerate(summaries, start=1)
    )
    return f"""
You are aggregating multiple AI/tech newsletter summaries from the same time period. Your task:

1. Identify overlapping news stories or topics across different newsletters
2. Merge similar stories into single, comprehensive entries
3. Preserve unique perspectives and details from each source
4. Keep all links and maintain their associated context
5. Remove redundant information while keeping unique insights
6. Organize by topic/theme rather than by newsletter source
7. Output clean, organized markdown

Combined Summaries:
{combined}

Provide the aggregated summary now:
"""
