import pytest
import asyncio
import os
import sys
from datetime import datetime, timezone
from unittest.mock import patch, AsyncMock

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pipeline.models import CustomBotRule, SignalResult, SignalRule, SignalRuleConditions, TrackingEvent
from pipeline.nodes.capture import capture
from pipeline.nodes.signal import fire_signals
from pipeline.workflow import process_event
from tools.idempotency import Idem

CHROME_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


class TestEventProcessingFlow:
    """Test the complete tracking event workflow."""

    def setup_method(self):
        """Set up test fixtures."""
        self.form_event = {
            "session_id": "sess_100",
            "event_id": "evt_100",
            "event_type": "form_complete",
            "page": "health-quiz",
            "page_type": "quiz",
            "domain": "example.com",
            "step_number": 6,
            "step_name": "contact",
            "user_agent": CHROME_UA,
            "ip_address": "198.51.100.20",
            "screen_resolution": "1440x900",
            "viewport": "1440x789",
            "language": "en-US",
            "browser": "Chrome",
            "os": "macOS",
            "email": "jane@example.com",
            "phone": "555-123-4567",
            "first_name": "Jane",
            "last_name": "Doe",
            "fbclid": "IwAR0abc",
            "quiz_answers": {"budget": "$100-$150/month"},
        }
        self.signal_rules = [
            SignalRule(
                id=1,
                name="Qualified quiz lead",
                trigger_event="form_complete",
                meta_event_name="QualifiedLead",
                conditions=SignalRuleConditions(has_email=True, min_budget=50),
                content_name="health-quiz",
            ),
            SignalRule(
                id=2,
                name="Low budget",
                trigger_event="form_complete",
                meta_event_name="DisqualifiedLead",
                conditions=SignalRuleConditions(max_budget=49),
                custom_value=0,
            ),
        ]

    def test_capture_drops_pii_outside_form_complete(self):
        raw = dict(self.form_event, event_type="step_complete")

        result = capture({"raw": raw, "errors": []})

        event = result["event"]
        assert event.email is None
        assert event.phone is None
        assert event.first_name is None
        assert event.session_id == "sess_100"

    def test_capture_keeps_pii_on_form_complete(self):
        result = capture({"raw": self.form_event, "errors": []})

        assert result["event"].email == "jane@example.com"
        assert result["event"].phone == "555-123-4567"

    def test_capture_invalid_payload(self):
        result = capture({"raw": {"event_type": "form_complete"}, "errors": []})

        assert "event" not in result
        assert result["decided_path"] == "invalid"
        assert "session_id" in result["errors"][0]

    def test_capture_defaults_event_type(self):
        result = capture({"raw": {"session_id": "s"}, "errors": []})

        assert result["event"].event_type == "step_complete"

    def test_capture_accepts_client_timestamp(self):
        raw = dict(self.form_event, timestamp="2026-03-01T12:00:00Z")

        result = capture({"raw": raw, "errors": []})

        assert result["event"].event_timestamp == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def test_human_form_completion_queues_signal(self):
        result = process_event(self.form_event, signal_rules=self.signal_rules)

        assert result["verdict"].is_bot is False
        assert result["decided_path"] == "signal"
        assert result["lead_tier"] == "qualified"
        assert len(result["signals"]) == 1
        signal = result["signals"][0]
        assert signal["meta_event_name"] == "QualifiedLead"
        assert signal["value"] == 1500
        assert signal["content_name"] == "health-quiz"
        assert signal["data"].email == "jane@example.com"
        assert signal["data"].fbclid == "IwAR0abc"

    def test_bot_traffic_is_not_scored(self):
        raw = dict(self.form_event, user_agent="Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)")

        result = process_event(raw, signal_rules=self.signal_rules)

        assert result["verdict"].is_bot is True
        assert result["verdict"].bot_type == "Google Bot"
        assert result["decided_path"] == "bot"
        assert result["signals"] == []

    def test_custom_rules_reach_classifier(self):
        rules = [CustomBotRule(id=3, rule_type="ip_prefix", value="198.51.100.", label="Agency Office")]

        result = process_event(self.form_event, custom_rules=rules, signal_rules=self.signal_rules)

        assert result["verdict"].reasons == ["custom_ip_rule"]
        assert result["verdict"].bot_type == "Agency Office"
        assert result["signals"] == []

    def test_disqualified_signal_has_no_pii(self):
        raw = dict(self.form_event, quiz_answers={"budget": "$20-$40"})

        result = process_event(raw, signal_rules=self.signal_rules)

        assert result["lead_tier"] == "disqualified"
        signal = result["signals"][0]
        assert signal["meta_event_name"] == "DisqualifiedLead"
        assert signal["value"] == 0
        assert signal["content_name"] == "health-quiz"
        assert signal["data"].email is None
        assert signal["data"].first_name is None
        assert signal["data"].ip_address == "198.51.100.20"

    def test_no_matching_rules(self):
        raw = dict(self.form_event, event_type="step_complete")

        result = process_event(raw, signal_rules=self.signal_rules)

        assert result["decided_path"] == "no_signal"
        assert result["signals"] == []
        assert result.get("lead_tier") is None

    def test_landing_event_supplies_attribution(self):
        landing = TrackingEvent(session_id="sess_100", event_type="page_land", fbp="fb.1.land", external_id="ext_9")

        result = process_event(self.form_event, signal_rules=self.signal_rules, landing=landing)

        data = result["signals"][0]["data"]
        assert data.fbp == "fb.1.land"
        assert data.external_id == "ext_9"

    def test_invalid_event_stops_workflow(self):
        result = process_event({"event_type": "page_land"})

        assert result["decided_path"] == "invalid"
        assert "verdict" not in result

    def test_score_failure_is_recorded(self):
        with patch("pipeline.nodes.score.match_signal_rules") as mock_match:
            mock_match.side_effect = Exception("rule store exploded")

            result = process_event(self.form_event, signal_rules=self.signal_rules)

        assert result["signals"] == []
        assert result["decided_path"] == "no_signal"
        assert "rule store exploded" in result["errors"][0]


class TestSignalFiring:
    """Background firing of queued signals."""

    def setup_method(self):
        raw = {
            "session_id": "sess_200",
            "event_id": "evt_200",
            "event_type": "form_complete",
            "user_agent": CHROME_UA,
            "screen_resolution": "1440x900",
            "viewport": "1440x789",
            "language": "en-US",
            "browser": "Chrome",
            "os": "macOS",
            "email": "joe@example.com",
        }
        rules = [
            SignalRule(id=1, name="first", trigger_event="form_complete", meta_event_name="QualifiedLead", custom_value=10),
            SignalRule(id=2, name="second", trigger_event="form_complete", meta_event_name="HighValueCustomer", custom_value=2000),
        ]
        self.state = process_event(raw, signal_rules=rules)
        with patch("tools.idempotency.redis.from_url") as mock_from_url:
            mock_from_url.side_effect = Exception("no redis in tests")
            self.idem = Idem(namespace="sig")

    def test_fires_each_signal(self):
        client = AsyncMock()
        client.fire_audience_signal.return_value = SignalResult(success=True)

        results = asyncio.run(fire_signals(self.state, client, self.idem))

        assert [r.success for r in results] == [True, True]
        names = [c.args[0] for c in client.fire_audience_signal.call_args_list]
        assert names == ["QualifiedLead", "HighValueCustomer"]
        assert self.state["signal_results"] == results

    def test_failure_does_not_stop_later_signals(self):
        client = AsyncMock()
        client.fire_audience_signal.side_effect = [RuntimeError("socket closed"), SignalResult(success=True)]

        results = asyncio.run(fire_signals(self.state, client, self.idem))

        assert results[0].success is False
        assert results[0].error == "socket closed"
        assert results[1].success is True

    def test_second_fire_of_same_signal_is_skipped(self):
        client = AsyncMock()
        client.fire_audience_signal.return_value = SignalResult(success=True)

        asyncio.run(fire_signals(self.state, client, self.idem))
        results = asyncio.run(fire_signals(self.state, client, self.idem))

        assert client.fire_audience_signal.call_count == 2
        assert [r.error for r in results] == ["duplicate signal", "duplicate signal"]
        assert "qualifiedlead_evt_200" in self.idem._memory_keys

    def test_failed_signal_can_be_retried(self):
        client = AsyncMock()
        client.fire_audience_signal.side_effect = [
            RuntimeError("socket closed"),
            SignalResult(success=True),
            SignalResult(success=True),
        ]

        asyncio.run(fire_signals(self.state, client, self.idem))
        results = asyncio.run(fire_signals(self.state, client, self.idem))

        assert results[0].success is True
        assert results[1].error == "duplicate signal"
        assert client.fire_audience_signal.call_count == 3

    def test_unconfigured_client_is_a_no_op(self, monkeypatch):
        from tools.meta_conversions import MetaConversionsClient

        monkeypatch.delenv("FACEBOOK_PIXEL_ID", raising=False)
        monkeypatch.delenv("FACEBOOK_ACCESS_TOKEN", raising=False)

        results = asyncio.run(fire_signals(self.state, MetaConversionsClient(), self.idem))

        assert all(r.error == "CAPI not configured" for r in results)


class TestIdempotency:
    """Test the idempotency functionality."""

    def setup_method(self):
        with patch("tools.idempotency.redis.from_url") as mock_from_url:
            mock_from_url.side_effect = Exception("no redis in tests")
            self.idem = Idem()

    def test_idempotency_check_and_set(self):
        """Test that duplicate keys are properly detected."""
        assert self.idem.r is None
        assert self.idem.check_and_set("evt_1") is True
        assert self.idem.check_and_set("evt_1") is False

    def test_idempotency_different_keys(self):
        """Test that different keys are processed independently."""
        assert self.idem.check_and_set("evt_1") is True
        assert self.idem.check_and_set("evt_2") is True

    def test_idempotency_empty_key(self):
        """Test handling of empty keys."""
        assert self.idem.check_and_set("") is False
        assert self.idem.check_and_set(None) is False

    def test_expired_key_can_be_claimed_again(self):
        assert self.idem.check_and_set("evt_1", ttl=-1) is True
        assert self.idem.check_and_set("evt_1") is True

    def test_expired_keys_are_pruned(self):
        self.idem.check_and_set("evt_old", ttl=-1)
        self.idem.check_and_set("evt_new")

        assert "evt_old" not in self.idem._memory_keys
        assert "evt_new" in self.idem._memory_keys

    def test_clear_key(self):
        self.idem.check_and_set("evt_1")

        assert self.idem.clear_key("evt_1") is True
        assert self.idem.check_and_set("evt_1") is True

    def test_redis_backend(self):
        with patch("tools.idempotency.redis.from_url") as mock_from_url:
            mock_from_url.return_value.set.side_effect = [True, None]
            idem = Idem(namespace="sig")

        assert idem.check_and_set("abc") is True
        assert idem.check_and_set("abc") is False
        assert mock_from_url.return_value.set.call_args.args[0] == "sig:abc"


if __name__ == "__main__":
    # Run tests
    pytest.main([__file__, "-v"])
