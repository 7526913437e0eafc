"""
Configuration and Auth Helper Tests

Run with: python -m pytest tests/test_config.py -v
"""

from unittest.mock import patch

import pytest
from jose import jwt

from taxflow.config import SchedulerSettings
from taxflow.supabase_client import verify_supabase_token


class TestSchedulerSettings:

    def test_defaults(self):
        settings = SchedulerSettings()
        assert settings.max_concurrent_jobs == 5
        assert settings.default_timeout_ms == 300000
        assert settings.default_max_retries == 3
        assert settings.default_retry_delay_ms == 5000
        assert settings.log_capacity == 100
        assert settings.retention_days == 7

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("JOB_MAX_CONCURRENT", "2")
        monkeypatch.setenv("JOB_POLL_INTERVAL", "0.25")
        monkeypatch.setenv("JOB_STORE", "Supabase")
        monkeypatch.setenv("JOB_RUN_SCHEDULER", "false")
        monkeypatch.setenv("JOB_LOST_AFTER_MS", "120000")
        settings = SchedulerSettings.from_env()
        assert settings.max_concurrent_jobs == 2
        assert settings.poll_interval == 0.25
        assert settings.store_backend == "supabase"
        assert settings.run_scheduler is False
        assert settings.lost_after_ms == 120000
        assert settings.heartbeat_interval == 10.0

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            SchedulerSettings(max_concurrent_jobs=0)
        with pytest.raises(ValueError):
            SchedulerSettings(poll_interval=0)
        with pytest.raises(ValueError):
            SchedulerSettings(heartbeat_interval=30.0, lost_after_ms=30000)


class TestVerifyToken:

    def test_valid_token(self):
        token = jwt.encode({"sub": "user-1", "email": "a@example.com"}, "secret", algorithm="HS256")
        assert verify_supabase_token(token) == {
            "id": "user-1",
            "email": "a@example.com",
            "role": "authenticated",
        }

    def test_token_without_subject(self):
        token = jwt.encode({"email": "a@example.com"}, "secret", algorithm="HS256")
        assert verify_supabase_token(token) is None

    def test_garbage_token(self):
        assert verify_supabase_token("not-a-jwt") is None
        assert verify_supabase_token("") is None

    def test_signature_checked_when_secret_configured(self):
        claims = {"sub": "user-1", "aud": "authenticated"}
        good = jwt.encode(claims, "project-secret", algorithm="HS256")
        forged = jwt.encode(claims, "someone-else", algorithm="HS256")
        wrong_audience = jwt.encode({"sub": "user-1", "aud": "anon"}, "project-secret", algorithm="HS256")

        with patch("taxflow.supabase_client.SUPABASE_JWT_SECRET", "project-secret"):
            assert verify_supabase_token(good)["id"] == "user-1"
            assert verify_supabase_token(forged) is None
            assert verify_supabase_token(wrong_audience) is None


class TestWorker:
    """The standalone worker wraps a scheduler until shutdown is signalled."""

    def test_worker_runs_until_shutdown(self):
        import asyncio

        from worker import BackgroundJobWorker
        from conftest import make_scheduler, ok_handler

        scheduler = make_scheduler({"work": ok_handler})
        worker = BackgroundJobWorker(SchedulerSettings(), cleanup_interval=0.01, scheduler=scheduler)

        async def run():
            task = asyncio.create_task(worker.start())
            await asyncio.sleep(0.05)
            assert scheduler.is_running
            worker._handle_shutdown()
            await asyncio.wait_for(task, timeout=2)

        asyncio.run(run())
        assert scheduler.is_running is False
