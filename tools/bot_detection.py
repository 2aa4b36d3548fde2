import re
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from pipeline.models import BotVerdict, CustomBotRule

# Ordered: named crawlers and tools first, generic catch-alls last.
DEFAULT_UA_PATTERNS: Tuple[Tuple[str, str], ...] = (
    # search engines
    (r"googlebot", "Google Bot"),
    (r"mediapartners", "Google AdSense"),
    (r"bingbot", "Bing Bot"),
    (r"slurp", "Yahoo Slurp"),
    (r"duckduckbot", "DuckDuckGo Bot"),
    (r"baiduspider", "Baidu Spider"),
    (r"yandex", "Yandex Bot"),
    (r"applebot", "Apple Bot"),
    (r"petalbot", "Petal Bot"),
    (r"neevabot", "Neeva Bot"),
    # social / link previews
    (r"facebookexternalhit", "Facebook Crawler"),
    (r"facebot", "Facebook Crawler"),
    # AI crawlers
    (r"gptbot", "OpenAI GPTBot"),
    (r"claudebot", "Anthropic ClaudeBot"),
    (r"ccbot", "Common Crawl"),
    (r"bytespider", "ByteDance Spider"),
    # SEO tools
    (r"semrush", "SEMrush"),
    (r"ahrefs", "Ahrefs"),
    (r"mj12bot", "Majestic Bot"),
    (r"dotbot", "Moz DotBot"),
    (r"screaming frog", "Screaming Frog"),
    (r"dataprovider", "Dataprovider"),
    # archives
    (r"ia_archiver", "Alexa / Archive Crawler"),
    (r"archive\.org", "Internet Archive"),
    (r"httrack", "HTTrack"),
    # uptime monitoring
    (r"pingdom", "Pingdom Monitor"),
    (r"uptimerobot", "UptimeRobot Monitor"),
    (r"site24x7", "Site24x7 Monitor"),
    # headless browsers / automation
    (r"headlesschrome", "Headless Chrome"),
    (r"phantomjs", "PhantomJS"),
    (r"selenium", "Selenium"),
    (r"puppeteer", "Puppeteer"),
    (r"playwright", "Playwright"),
    # scripting HTTP clients
    (r"wget", "Wget"),
    (r"curl/", "cURL"),
    (r"python-requests", "Python Requests"),
    (r"python-urllib", "Python urllib"),
    (r"go-http-client", "Go HTTP Client"),
    (r"java/", "Java HTTP Client"),
    (r"apache-httpclient", "Apache HttpClient"),
    (r"okhttp", "OkHttp"),
    (r"node-fetch", "node-fetch"),
    (r"axios", "Axios"),
    # scrapers / validators
    (r"scrapy", "Scrapy"),
    (r"nutch", "Apache Nutch"),
    (r"linkchecker", "Link Checker"),
    (r"w3c_validator", "W3C Validator"),
    # internal test traffic
    (r"testbot", "Test Bot"),
    (r"test-agent", "Test Agent"),
    (r"manualtest", "Manual Test"),
    # generic catch-alls
    (r"bot\b", "Generic Bot"),
    (r"crawler", "Generic Crawler"),
    (r"crawling", "Generic Crawler"),
    (r"spider", "Generic Spider"),
)

# Meta's crawler / link-prefetch address space (AS32934), compared as literal prefixes.
FACEBOOK_IP_PREFIXES: Tuple[str, ...] = (
    "31.13.",
    "66.220.",
    "69.63.",
    "69.171.",
    "129.134.",
    "157.240.",
    "173.252.",
    "179.60.",
    "185.60.216.",
    "185.60.217.",
    "204.15.20.",
    "2a03:2880:",
    "2620:0:1c00:",
    "2c0f:fb50:",
)

SHORT_UA_LENGTH = 30
MIN_MISSING_FINGERPRINT = 4

MISSING_UA_LABEL = "Missing User Agent"
SHORT_UA_LABEL = "Short User Agent"
CUSTOM_UA_LABEL = "Custom UA Rule"
FACEBOOK_IP_LABEL = "Facebook Prefetcher"
CUSTOM_IP_LABEL = "Custom IP Rule"
NO_FINGERPRINT_LABEL = "No Browser Fingerprint"


class BotClassifier:
    """Deterministic rule-based bot detection for tracking events.

    The static UA patterns and crawler IP prefixes are constructor data so a
    classifier can be built over any subset. Instances hold no mutable state;
    custom rules are passed per call.
    """

    def __init__(
        self,
        ua_patterns: Iterable[Tuple[str, str]] = DEFAULT_UA_PATTERNS,
        facebook_ip_prefixes: Iterable[str] = FACEBOOK_IP_PREFIXES,
        ip_overrides_label: bool = False,
    ):
        self.ua_patterns: Tuple[Tuple[re.Pattern, str], ...] = tuple(
            (re.compile(pattern, re.IGNORECASE), label) for pattern, label in ua_patterns
        )
        self.facebook_ip_prefixes = tuple(prefix.lower() for prefix in facebook_ip_prefixes)
        # When False an IP rule only labels events no UA rule has labelled.
        self.ip_overrides_label = ip_overrides_label

    def match_static_ua(self, user_agent: str) -> Optional[str]:
        """Return the label of the first static pattern found in the UA, if any."""
        for pattern, label in self.ua_patterns:
            if pattern.search(user_agent):
                return label
        return None

    def classify(self, fingerprint: Any, custom_rules: Sequence[CustomBotRule] = ()) -> BotVerdict:
        """
        Classify one event.

        Args:
            fingerprint: Any object exposing user_agent, ip_address,
                screen_resolution, viewport, language, browser and os
                (a TrackingEvent in practice)
            custom_rules: Custom rules in evaluation order; disabled ones are ignored

        Returns:
            BotVerdict with cumulative reasons and the first label assigned
        """
        reasons: List[str] = []
        bot_type: Optional[str] = None

        user_agent = getattr(fingerprint, "user_agent", None) or ""
        ip_address = (getattr(fingerprint, "ip_address", None) or "").strip().lower()

        # 1-4: user agent
        if not user_agent.strip():
            reasons.append("missing_ua")
            bot_type = MISSING_UA_LABEL
        else:
            static_label = self.match_static_ua(user_agent)
            if static_label:
                reasons.append("bot_ua")
                bot_type = static_label
            elif len(user_agent) < SHORT_UA_LENGTH:
                reasons.append("short_ua")
                bot_type = bot_type or SHORT_UA_LABEL

            custom_label = self._match_custom_ua(user_agent, custom_rules)
            if custom_label:
                reasons.append("custom_ua_rule")
                bot_type = custom_label

        # 5-6: ip address
        if ip_address:
            if ip_address.startswith(self.facebook_ip_prefixes):
                reasons.append("facebook_ip")
                bot_type = self._ip_label(bot_type, FACEBOOK_IP_LABEL)

            custom_label = self._match_custom_ip(ip_address, custom_rules)
            if custom_label:
                reasons.append("custom_ip_rule")
                bot_type = self._ip_label(bot_type, custom_label)

        # 7: fingerprint completeness
        missing = missing_fingerprint_fields(fingerprint)
        if len(missing) >= MIN_MISSING_FINGERPRINT:
            reasons.append("no_fingerprint:" + ",".join(missing))
            bot_type = bot_type or NO_FINGERPRINT_LABEL

        return BotVerdict(is_bot=bool(reasons), bot_type=bot_type, reasons=reasons)

    def detect_bot_from_ua(self, user_agent: Optional[str]) -> bool:
        """UA-only check for call sites that have nothing but a user agent."""
        if not user_agent or not user_agent.strip():
            return True
        return self.match_static_ua(user_agent) is not None

    def _ip_label(self, current: Optional[str], label: str) -> str:
        if self.ip_overrides_label or not current:
            return label
        return current

    @staticmethod
    def _match_custom_ua(user_agent: str, rules: Sequence[CustomBotRule]) -> Optional[str]:
        for rule in rules:
            if not rule.enabled or rule.rule_type != "ua_pattern":
                continue
            try:
                pattern = re.compile(rule.value, re.IGNORECASE)
            except re.error as e:
                logger.warning(f"Skipping custom UA rule {rule.id} with invalid pattern {rule.value!r}: {e}")
                continue
            if pattern.search(user_agent):
                return rule.label or CUSTOM_UA_LABEL
        return None

    @staticmethod
    def _match_custom_ip(ip_address: str, rules: Sequence[CustomBotRule]) -> Optional[str]:
        for rule in rules:
            if not rule.enabled or rule.rule_type != "ip_prefix":
                continue
            prefix = rule.value.strip().lower()
            if prefix and ip_address.startswith(prefix):
                return rule.label or CUSTOM_IP_LABEL
        return None


def missing_fingerprint_fields(fingerprint: Any) -> List[str]:
    """Names of the client-reported descriptive fields that are absent."""
    fields = (
        ("screen", "screen_resolution"),
        ("viewport", "viewport"),
        ("lang", "language"),
        ("browser", "browser"),
        ("os", "os"),
    )
    return [name for name, attr in fields if not getattr(fingerprint, attr, None)]


# Global classifier instance
default_classifier = BotClassifier()


def classify(fingerprint: Any, custom_rules: Sequence[CustomBotRule] = ()) -> BotVerdict:
    """Classify an event using the global classifier."""
    return default_classifier.classify(fingerprint, custom_rules)


def detect_bot_from_ua(user_agent: Optional[str]) -> bool:
    """UA-only bot check using the global classifier."""
    return default_classifier.detect_bot_from_ua(user_agent)
