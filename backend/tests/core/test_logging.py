"""Tests for log redaction."""

from perfwatch.core.logging import redact_sensitive_data, redact_string


class TestRedaction:
    def test_sensitive_keys_are_masked(self):
        event = {"event": "sending", "header_value": "Bearer abc", "password": "hunter2"}

        result = redact_sensitive_data(None, "info", event)

        assert result["header_value"] == "***REDACTED***"
        assert result["password"] == "***REDACTED***"
        assert result["event"] == "sending"

    def test_connection_string_password_is_masked(self):
        message = "login failed for Server=db01;User Id=mon;Password=s3cret;Encrypt=yes"

        assert redact_string(message) == "login failed for Server=db01;User Id=mon;Password=***;Encrypt=yes"

    def test_free_text_values_are_scrubbed(self):
        event = {"event": "connect error: Pwd=abc;Server=x"}

        result = redact_sensitive_data(None, "error", event)

        assert result["event"] == "connect error: Pwd=***;Server=x"

    def test_original_event_dict_untouched(self):
        event = {"token": "abc"}
        redact_sensitive_data(None, "info", event)
        assert event["token"] == "abc"
