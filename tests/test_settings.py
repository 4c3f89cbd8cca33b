import os
from unittest import mock

from spendcube.governor import BatchConfig
from spendcube.settings import PipelineSettings


class TestPipelineSettings:
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = PipelineSettings.from_env()
        assert settings == PipelineSettings()
        assert settings.classification_batch == BatchConfig(batch_size=10, max_concurrency=3, inter_batch_delay_ms=100)
        assert settings.checkpoint_backend == "memory"
        assert settings.max_steps == 32

    def test_overrides_from_environment(self):
        env = {
            "PIPELINE_QA_BATCH_SIZE": "8",
            "PIPELINE_QA_MAX_CONCURRENCY": "4",
            "PIPELINE_QA_DELAY_MS": "0",
            "CACHE_VENDOR_CONFIDENCE_FACTOR": "0.75",
            "RATE_LIMIT_MAX_TOKENS": "20",
            "CHECKPOINT_BACKEND": " SQLite ",
            "CHECKPOINT_RETENTION_HOURS": "24",
        }
        settings = PipelineSettings.from_env(env)
        assert settings.qa_batch == BatchConfig(batch_size=8, max_concurrency=4, inter_batch_delay_ms=0)
        assert settings.cache_vendor_confidence_factor == 0.75
        assert settings.rate_limit_max_tokens == 20
        assert settings.checkpoint_backend == "sqlite"
        assert settings.checkpoint_retention_hours == 24

    def test_invalid_and_out_of_range_values_are_clamped(self):
        env = {
            "PIPELINE_CLASSIFICATION_BATCH_SIZE": "0",
            "PIPELINE_CLASSIFICATION_MAX_CONCURRENCY": "lots",
            "CACHE_VENDOR_CONFIDENCE_FACTOR": "3",
            "PIPELINE_MAX_STEPS": "-4",
        }
        settings = PipelineSettings.from_env(env)
        assert settings.classification_batch.batch_size == 1
        assert settings.classification_batch.max_concurrency == 3
        assert settings.cache_vendor_confidence_factor == 1.0
        assert settings.max_steps == 1

    def test_continue_on_error_flag(self):
        assert PipelineSettings().continue_on_error is True
        assert PipelineSettings.from_env({"PIPELINE_CONTINUE_ON_ERROR": "false"}).continue_on_error is False
        assert PipelineSettings.from_env({"PIPELINE_CONTINUE_ON_ERROR": "1"}).continue_on_error is True
