import json
import os
from typing import List, Optional

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from pipeline.models import CustomBotRule, SignalRule

BOT_RULES_PATH = os.getenv("BOT_RULES_JSON", "./infra/bot_rules.json")
SIGNAL_RULES_PATH = os.getenv("SIGNAL_RULES_JSON", "./infra/signal_rules.json")

_bot_rules_adapter = TypeAdapter(List[CustomBotRule])
_signal_rules_adapter = TypeAdapter(List[SignalRule])


def _load_json(path: str):
    try:
        with open(path, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        logger.warning(f"Rule file not found at {path}, using no rules")
        return []
    except json.JSONDecodeError:
        logger.error(f"Invalid JSON in rule file {path}")
        return []


def load_custom_bot_rules(path: Optional[str] = None) -> List[CustomBotRule]:
    """Enabled block-list rules, in file order."""
    path = path or BOT_RULES_PATH
    try:
        rules = _bot_rules_adapter.validate_python(_load_json(path))
    except ValidationError as e:
        logger.error(f"Invalid bot rules in {path}: {e}")
        return []
    return [rule for rule in rules if rule.enabled]


def load_signal_rules(path: Optional[str] = None) -> List[SignalRule]:
    """Active signal rules, in file order."""
    path = path or SIGNAL_RULES_PATH
    try:
        rules = _signal_rules_adapter.validate_python(_load_json(path))
    except ValidationError as e:
        logger.error(f"Invalid signal rules in {path}: {e}")
        return []
    return [rule for rule in rules if rule.enabled]
