"""Unit tests for admission control."""

from unittest.mock import patch

import pytest

from pagepulse.admission import AdmissionController, AdmissionConfig


class TestAdmissionConfig:
    """Tests for AdmissionConfig validation."""

    def test_defaults(self):
        config = AdmissionConfig()

        assert config.max_concurrent_runs == 5
        assert config.max_requests_per_window == 60
        assert config.window_ms == 60000

    def test_rejects_zero_limits(self):
        with pytest.raises(ValueError):
            AdmissionConfig(max_concurrent_runs=0)
        with pytest.raises(ValueError):
            AdmissionConfig(max_requests_per_window=0)


class TestConcurrencyCap:
    """Tests for the global concurrency cap."""

    @pytest.fixture
    def controller(self):
        return AdmissionController()

    def test_sixth_run_is_rejected(self, controller):
        for i in range(5):
            assert controller.try_admit().allowed
            controller.register_start(f"run-{i}")

        decision = controller.try_admit()

        assert decision.allowed is False
        assert decision.reason == "Maximum concurrent runs reached (5)"

    def test_ending_a_run_frees_a_slot(self, controller):
        for i in range(5):
            controller.register_start(f"run-{i}")

        duration = controller.register_end("run-0")

        assert duration is not None
        assert controller.try_admit().allowed is True

    def test_concurrency_checked_before_rate(self, controller):
        for i in range(5):
            controller.register_start(f"run-{i}", client_key="10.0.0.1")

        decision = controller.try_admit("10.0.0.1")

        assert "Maximum concurrent runs" in decision.reason

    def test_unknown_run_end(self, controller):
        assert controller.register_end("never-started") is None


class TestRateWindow:
    """Tests for the per-client request window."""

    @pytest.fixture
    def controller(self):
        return AdmissionController(AdmissionConfig(max_concurrent_runs=100))

    def test_sixty_first_request_is_rejected(self, controller):
        with patch('time.time', return_value=1000.0):
            for i in range(60):
                assert controller.try_admit("203.0.113.7").allowed
                controller.register_start(f"run-{i}", client_key="203.0.113.7")
                controller.register_end(f"run-{i}")

            decision = controller.try_admit("203.0.113.7")

        assert decision.allowed is False
        assert decision.reason == "Rate limit exceeded for 203.0.113.7"
        assert decision.retry_after_ms == 60000

    def test_window_resets_after_expiry(self, controller):
        with patch('time.time', return_value=1000.0):
            for i in range(60):
                controller.register_start(f"run-{i}", client_key="client")
                controller.register_end(f"run-{i}")
            assert not controller.try_admit("client").allowed

        with patch('time.time', return_value=1060.0):
            assert controller.try_admit("client").allowed

    def test_clients_are_independent(self, controller):
        with patch('time.time', return_value=1000.0):
            for i in range(60):
                controller.register_start(f"run-{i}", client_key="busy")
                controller.register_end(f"run-{i}")

            assert not controller.try_admit("busy").allowed
            assert controller.try_admit("quiet").allowed

    def test_no_client_key_skips_rate_check(self, controller):
        with patch('time.time', return_value=1000.0):
            for i in range(80):
                controller.register_start(f"run-{i}")
                controller.register_end(f"run-{i}")

            assert controller.try_admit().allowed


class TestSweep:
    """Tests for stale run and window cleanup."""

    def test_sweep_removes_stale_runs_and_windows(self):
        controller = AdmissionController()
        with patch('time.time', return_value=1000.0):
            controller.register_start("forgotten", client_key="client")

        with patch('time.time', return_value=1000.0 + 301):
            removed = controller.sweep()

        assert removed == {'stale_runs': 1, 'expired_windows': 1}
        assert controller.active_count == 0
        assert controller.get_status()['stale_removed'] == 1

    def test_sweep_keeps_fresh_runs(self):
        controller = AdmissionController()
        controller.register_start("fresh")

        assert controller.sweep()['stale_runs'] == 0
        assert controller.active_count == 1

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self):
        controller = AdmissionController()
        controller.start()
        controller.register_start("run-1")

        await controller.shutdown()

        assert controller._sweep_task is None
        assert controller.active_count == 0


class TestStatus:
    """Tests for status reporting."""

    def test_status_reports_load(self):
        controller = AdmissionController()
        controller.register_start("run-1", url="https://example.com")
        controller.register_start("run-2")

        status = controller.get_status()

        assert status['active_runs'] == 2
        assert status['max_concurrent_runs'] == 5
        assert status['system_load'] == 40

    def test_active_runs_listing(self):
        controller = AdmissionController()
        controller.register_start("run-1", client_key="client", url="https://example.com")

        runs = controller.get_active_runs()

        assert runs[0]['run_id'] == "run-1"
        assert runs[0]['url'] == "https://example.com"
        assert runs[0]['client_key'] == "client"
