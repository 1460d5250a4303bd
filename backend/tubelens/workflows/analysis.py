"""
Transcript analysis workflow.

    fetching   → load the stored transcript and format it for the LLM
    analyzing  → stream the model's JSON answer, forwarding it as partial events
    saving     → persist the parsed result under (video, version)

The model picks its own section layout per video: it returns the reasoning
behind the layout, the layout itself, and the analysis that fills it.
"""

import json
import logging

from tubelens.engine.pipeline import Step, StepContext, StepPartial, StepPipeline, StepResult
from tubelens.errors import DependencyError
from tubelens.services.container import Services
from tubelens.services.llm_client import strip_think_tags
from tubelens.services.transcripts import TranscriptData

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You are an expert at analyzing video transcripts and extracting genuinely useful information.
Decide which sections this particular video deserves, then fill them in.

Good sections save the viewer time and help them retain and apply what they learned:
tldr, key_takeaways, actionable_insights, quotes, frameworks, stories, facts,
products_mentioned, reflection_questions, key_moments. Invent new sections when the
content calls for it (a cooking video may need "ingredients", a debate "argument_structure").
Always include a detailed, readable summary as one of the first sections.

Rules:
- Section keys are snake_case and every key in "analysis" must appear in "schema".
- Section types are "string" (markdown prose), "string[]" (a list) or "object".
- Prefer five great sections over fifteen mediocre ones.
- Use markdown generously inside string values.
- Cite timestamps (m:ss or h:mm:ss) where they help the reader.

Respond with a single JSON object: {"reasoning": ..., "schema": ..., "analysis": ...}.
"""

ANALYSIS_SCHEMA = {
    "type": "object",
    "properties": {
        "reasoning": {"type": "string"},
        "schema": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["string", "string[]", "object"]},
                    "description": {"type": "string"},
                },
                "required": ["type", "description"],
            },
        },
        "analysis": {"type": "object"},
    },
    "required": ["reasoning", "schema", "analysis"],
}


def build_user_message(data: TranscriptData, additional_instructions: str | None = None) -> str:
    parts = [f"Title: {data.title}"]
    if data.channel_name:
        parts.append(f"Channel: {data.channel_name}")
    if data.description:
        parts.append(f"Description:\n{data.description}")
    parts.append(f"Transcript:\n{data.transcript}")
    if additional_instructions:
        parts.append(f"Additional instructions from the user:\n{additional_instructions}")
    return "\n\n".join(parts)


def parse_analysis(text: str) -> dict:
    try:
        result = json.loads(strip_think_tags(text))
    except json.JSONDecodeError as exc:
        raise DependencyError(f"Model returned invalid JSON: {exc}") from exc
    if not isinstance(result, dict) or not isinstance(result.get("analysis"), dict):
        raise DependencyError("Model response is missing the analysis object")
    return result


def build_analysis_pipeline(services: Services) -> StepPipeline:
    flush_chars = services.settings.partial_flush_chars

    async def fetching(ctx: StepContext) -> TranscriptData:
        return await services.transcripts.get(ctx.key.subject_id)

    async def analyzing(ctx: StepContext):
        prompt = build_user_message(ctx.outputs["fetching"], ctx.params.get("additional_instructions"))
        chunks: list[str] = []
        pending = ""
        async for chunk in services.llm.stream(prompt, system=SYSTEM_PROMPT, schema=ANALYSIS_SCHEMA):
            chunks.append(chunk)
            pending += chunk
            if len(pending) >= flush_chars:
                yield StepPartial(pending)
                pending = ""
        if pending:
            yield StepPartial(pending)
        yield StepResult(parse_analysis("".join(chunks)))

    async def saving(ctx: StepContext) -> bool:
        return await services.results.save_analysis(
            ctx.key,
            ctx.run_id,
            ctx.outputs["analyzing"],
            additional_instructions=ctx.params.get("additional_instructions"),
        )

    def summarize(ctx: StepContext) -> dict:
        result = ctx.outputs["analyzing"]
        return {
            "subjectId": ctx.key.subject_id,
            "version": ctx.key.version,
            "runId": ctx.run_id,
            "sections": sorted(result["analysis"].keys()),
        }

    return StepPipeline(
        "analysis",
        [
            Step("fetching", "Fetching transcript from database...", 0, fetching),
            Step("analyzing", "Analyzing transcript and generating extraction schema...", 10, analyzing),
            Step("saving", "Saving analysis to database...", 90, saving),
        ],
        summarize=summarize,
    )
