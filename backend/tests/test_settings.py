"""
Tests for threshold configuration and logging setup.
"""
import logging

import pytest
from pydantic import ValidationError

from settings import DEFAULT_THRESHOLDS, Thresholds, configure_logging, load_thresholds


class TestThresholds:

    def test_defaults(self):
        assert DEFAULT_THRESHOLDS.status_tolerance == 50.0
        assert DEFAULT_THRESHOLDS.high_discrepancy_threshold == 1000.0
        assert DEFAULT_THRESHOLDS.name_similarity_cutoff == 0.70
        assert DEFAULT_THRESHOLDS.fuzzy_confidence_cutoff == 0.5
        assert DEFAULT_THRESHOLDS.billing_period_days == 30
        assert DEFAULT_THRESHOLDS.tax_id_prefix_length == 6

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv('RECON_STATUS_TOLERANCE', '25')
        monkeypatch.setenv('RECON_SYMMETRIC_NAME_SIMILARITY', 'false')
        t = load_thresholds(tmp_path / 'missing.env')
        assert t.status_tolerance == 25.0
        assert t.symmetric_name_similarity is False
        assert t.billing_period_days == 30
        print("✓ RECON_* environment overrides applied")

    def test_dotenv_file(self, monkeypatch, tmp_path):
        # Registered so the value load_dotenv writes is removed afterwards.
        monkeypatch.setenv('RECON_HIGH_DISCREPANCY_THRESHOLD', 'x')
        monkeypatch.delenv('RECON_HIGH_DISCREPANCY_THRESHOLD')
        env_file = tmp_path / '.env'
        env_file.write_text('RECON_HIGH_DISCREPANCY_THRESHOLD=500\n')
        assert load_thresholds(env_file).high_discrepancy_threshold == 500.0

    def test_invalid_override_fails_loudly(self, monkeypatch, tmp_path):
        monkeypatch.setenv('RECON_BILLING_PERIOD_DAYS', 'monthly')
        with pytest.raises(ValidationError):
            load_thresholds(tmp_path / 'missing.env')

    def test_out_of_range(self):
        with pytest.raises(ValidationError):
            Thresholds(name_similarity_cutoff=1.5)


class TestLogging:

    def test_configure_logging_uses_env_level(self, monkeypatch):
        monkeypatch.setenv('LOG_LEVEL', 'debug')
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        root.handlers = []
        try:
            configure_logging()
            assert root.level == logging.DEBUG
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
