"""Tests for settings validation."""

import pytest
from pydantic import ValidationError

from tubelens.config import Settings


class TestSettings:
    def test_single_worker_is_the_default(self):
        assert Settings().web_concurrency == 1

    @pytest.mark.parametrize("workers", [0, 2, 4])
    def test_multiple_workers_are_refused(self, workers):
        with pytest.raises(ValidationError, match="WEB_CONCURRENCY must be 1"):
            Settings(web_concurrency=workers)

    def test_worker_count_is_read_from_the_environment(self, monkeypatch):
        monkeypatch.setenv("WEB_CONCURRENCY", "3")
        with pytest.raises(ValidationError, match="single worker process"):
            Settings()

    def test_production_rejects_dev_credentials(self):
        with pytest.raises(ValidationError, match="SLIDES_API_PASSWORD"):
            Settings(environment="production", database_url="postgresql+asyncpg://app:s3cret@db/tubelens")
