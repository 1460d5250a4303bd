"""
Process-wide service container.

Built once at startup and shared by every request; tests build their own
against a throwaway database and fake collaborators.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import async_sessionmaker

from tubelens.config import Settings
from tubelens.engine.event_log import EventLog
from tubelens.engine.gateway import StreamGateway
from tubelens.engine.pipeline import PipelineRunner
from tubelens.engine.registry import RunRegistry
from tubelens.services.llm_client import LLMClient
from tubelens.services.results import ResultCache
from tubelens.services.slides_extractor import SlidesExtractorClient
from tubelens.services.transcripts import TranscriptStore


@dataclass
class Services:
    settings: Settings
    events: EventLog
    registry: RunRegistry
    runner: PipelineRunner
    gateway: StreamGateway
    results: ResultCache
    transcripts: TranscriptStore
    llm: LLMClient
    extractor: SlidesExtractorClient


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker,
    llm: LLMClient | None = None,
    extractor: SlidesExtractorClient | None = None,
) -> Services:
    events = EventLog(retention_seconds=settings.event_log_retention_seconds)
    registry = RunRegistry(session_factory, stale_after_seconds=settings.run_stale_after_seconds)
    runner = PipelineRunner(events, registry)
    return Services(
        settings=settings,
        events=events,
        registry=registry,
        runner=runner,
        gateway=StreamGateway(events, registry, runner),
        results=ResultCache(session_factory),
        transcripts=TranscriptStore(session_factory),
        llm=llm or LLMClient(
            base_url=settings.ollama_url,
            model=settings.llm_model,
            timeout_seconds=settings.llm_timeout_seconds,
            max_retries=settings.llm_max_retries,
            retry_base_delay=settings.llm_retry_base_delay,
        ),
        extractor=extractor or SlidesExtractorClient(
            base_url=settings.slides_extractor_url,
            password=settings.slides_api_password,
            image_base_url=settings.slides_image_base_url,
            job_timeout_seconds=settings.slides_job_timeout_seconds,
        ),
    )
