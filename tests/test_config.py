"""
Tests for configuration helpers and defaults.
"""

import logging
import os
from unittest import mock


class TestGetIntEnv:
    """Tests for get_int_env helper function."""

    def test_returns_default_when_env_not_set(self):
        """Should return default value when environment variable is not set."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_int_env("REELWATCH_TEST_INT", 42) == 42

    def test_parses_valid_integer(self):
        """Should parse a valid integer from the environment."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"REELWATCH_TEST_INT": "17"}):
            assert get_int_env("REELWATCH_TEST_INT", 42) == 17

    def test_invalid_value_falls_back_with_warning(self, caplog):
        """Should log a warning and return the default for non-integer input."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"REELWATCH_TEST_INT": "lots"}):
            with caplog.at_level(logging.WARNING, logger="config"):
                assert get_int_env("REELWATCH_TEST_INT", 42) == 42

        assert "Invalid REELWATCH_TEST_INT='lots', using default 42" in caplog.text

    def test_below_minimum(self, caplog):
        """Values below min_val should use the default."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"REELWATCH_TEST_INT": "0"}):
            with caplog.at_level(logging.WARNING, logger="config"):
                assert get_int_env("REELWATCH_TEST_INT", 5, min_val=1) == 5

        assert "REELWATCH_TEST_INT=0 is below minimum 1, using default 5" in caplog.text

    def test_above_maximum(self, caplog):
        """Values above max_val should use the default."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"REELWATCH_TEST_INT": "99"}):
            with caplog.at_level(logging.WARNING, logger="config"):
                assert get_int_env("REELWATCH_TEST_INT", 3, max_val=20) == 3

        assert "REELWATCH_TEST_INT=99 is above maximum 20, using default 3" in caplog.text

    def test_boundaries_are_inclusive(self):
        """min_val and max_val themselves are accepted."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"REELWATCH_TEST_INT": "20"}):
            assert get_int_env("REELWATCH_TEST_INT", 3, min_val=1, max_val=20) == 20


class TestGetFloatEnv:
    """Tests for get_float_env helper function."""

    def test_parses_valid_float(self):
        from config import get_float_env

        with mock.patch.dict(os.environ, {"REELWATCH_TEST_FLOAT": "0.35"}):
            assert get_float_env("REELWATCH_TEST_FLOAT", 0.2) == 0.35

    def test_invalid_value(self, caplog):
        from config import get_float_env

        with mock.patch.dict(os.environ, {"REELWATCH_TEST_FLOAT": "fast"}):
            with caplog.at_level(logging.WARNING, logger="config"):
                assert get_float_env("REELWATCH_TEST_FLOAT", 0.2) == 0.2

        assert "Invalid REELWATCH_TEST_FLOAT='fast', using default 0.2" in caplog.text

    def test_rejects_special_floats(self, caplog):
        """inf and nan should never reach the caller."""
        from config import get_float_env

        for raw in ("inf", "-inf", "nan"):
            with mock.patch.dict(os.environ, {"REELWATCH_TEST_FLOAT": raw}):
                with caplog.at_level(logging.WARNING, logger="config"):
                    assert get_float_env("REELWATCH_TEST_FLOAT", 1.5) == 1.5

        assert "(special float)" in caplog.text

    def test_range_validation(self):
        from config import get_float_env

        with mock.patch.dict(os.environ, {"REELWATCH_TEST_FLOAT": "0.05"}):
            assert get_float_env("REELWATCH_TEST_FLOAT", 0.2, min_val=0.1, max_val=0.5) == 0.2
        with mock.patch.dict(os.environ, {"REELWATCH_TEST_FLOAT": "0.9"}):
            assert get_float_env("REELWATCH_TEST_FLOAT", 0.2, min_val=0.1, max_val=0.5) == 0.2


class TestGetBoolEnv:
    """Tests for get_bool_env helper function."""

    def test_default_when_unset(self):
        from config import get_bool_env

        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_bool_env("REELWATCH_TEST_FLAG", True) is True
            assert get_bool_env("REELWATCH_TEST_FLAG", False) is False

    def test_false_values(self):
        from config import get_bool_env

        for raw in ("false", "FALSE", "0", "no", " No ", ""):
            with mock.patch.dict(os.environ, {"REELWATCH_TEST_FLAG": raw}):
                assert get_bool_env("REELWATCH_TEST_FLAG", True) is False

    def test_true_values(self):
        from config import get_bool_env

        for raw in ("true", "1", "yes", "on"):
            with mock.patch.dict(os.environ, {"REELWATCH_TEST_FLAG": raw}):
                assert get_bool_env("REELWATCH_TEST_FLAG", False) is True


class TestDefaults:
    """Sanity checks on the shipped defaults."""

    def test_poll_defaults(self):
        import config

        assert config.POLL_INTERVAL == 300
        assert config.POLL_REQUEST_DELAY == 0.2

    def test_retry_defaults(self):
        import config

        assert config.RETRY_MAX_RETRIES == 3
        assert config.RETRY_INITIAL_DELAY == 5.0
        assert config.RETRY_MAX_DELAY == 300.0
        assert config.RETRY_BACKOFF_MULTIPLIER == 2.0

    def test_stuck_defaults(self):
        import config

        assert config.STUCK_THRESHOLD_MINUTES == 60
        assert config.STUCK_SHORT_THRESHOLD_MINUTES == 30
        assert config.STUCK_LONG_THRESHOLD_MINUTES == 120

    def test_signature_header(self):
        import config

        assert config.WEBHOOK_SIGNATURE_HEADER == "X-Transcoder-Signature"
