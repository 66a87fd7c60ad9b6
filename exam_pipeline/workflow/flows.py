from __future__ import annotations

from typing import List, Sequence, Tuple

from exam_pipeline.workflow.utils.summary_models import ChunkSummary, Workflow


def _label(text: str) -> str:
    return text.replace('"', "#quot;").replace("\n", " ").strip()


def mermaid_flowchart(workflow: Workflow) -> str:
    lines = ["flowchart TD"]
    if not workflow.steps:
        lines.append(f'    S1["{_label(workflow.name)}"]')
        return "\n".join(lines)
    for index, step in enumerate(workflow.steps, start=1):
        lines.append(f'    S{index}["{_label(step)}"]')
    for index in range(1, len(workflow.steps)):
        lines.append(f"    S{index} --> S{index + 1}")
    return "\n".join(lines)


def collect_workflows(summaries: Sequence[ChunkSummary]) -> List[Tuple[ChunkSummary, Workflow]]:
    return [(summary, workflow) for summary in summaries for workflow in summary.workflows]


def render_workflows_report(lesson: str, summaries: Sequence[ChunkSummary]) -> str:
    """Markdown with one Mermaid flowchart per workflow and an overview table."""
    found = collect_workflows(summaries)
    parts = [f"# Workflows: {lesson}", ""]
    if not found:
        parts.append("No workflows were identified in this lesson.")
        return "\n".join(parts) + "\n"

    parts.extend(["| Workflow | Chunk | Steps |", "| --- | --- | --- |"])
    for summary, workflow in found:
        parts.append(f"| {workflow.name} | {summary.chunk_id} ({summary.title}) | {len(workflow.steps)} |")
    parts.append("")

    for summary, workflow in found:
        parts.append(f"## {workflow.name}")
        parts.append("")
        parts.append(f"_Source: chunk {summary.chunk_id}, {summary.title}_")
        parts.append("")
        parts.append("```mermaid")
        parts.append(mermaid_flowchart(workflow))
        parts.append("```")
        parts.append("")
        if workflow.notes:
            parts.append(f"> {workflow.notes}")
            parts.append("")
    return "\n".join(parts)


__all__ = ["collect_workflows", "mermaid_flowchart", "render_workflows_report"]
