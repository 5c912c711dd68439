# SupportCrew – settings
#
# Secrets and flags come from the environment (ON/OFF style like the rest of
# our bots); the reporting layout comes from config.json, which env can override.

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from supportcrew.errors import ConfigurationError
from supportcrew.lifecycle import parse_utc_offset

DEFAULT_CONFIG_PATH = "config.json"

# config.json key -> env override
CONFIG_KEYS = {
    "mention_message":     "MENTION_MESSAGE",
    "command_prefix":      "COMMAND_PREFIX",
    "resolution_tag_name": "RESOLUTION_TAG_NAME",
    "datasheet_init":      "DATASHEET_INIT",
    "datasheet_response":  "DATASHEET_RESPONSE",
    "datasheet_resolve":   "DATASHEET_RESOLVE",
    "utc_offset":          "UTC_OFFSET",
}

CONFIG_DEFAULTS: Dict[str, Any] = {
    "mention_message": "Hi! Open a post in the support forum and our team will be with you shortly.",
    "command_prefix": "!",
    "resolution_tag_name": "Resolved",
    "datasheet_init": "init",
    "datasheet_response": "response",
    "datasheet_resolve": "resolve",
    "utc_offset": 0,
}

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"


def env_bool(key: str, default: bool = True, env: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if env is None else env
    raw = (env.get(key) or "").strip().upper()
    if raw == "": return default
    return raw in ("ON", "1", "TRUE", "YES")


def sanitize_env_value(raw: Optional[str]) -> str:
    """Trim whitespace and one pair of surrounding quotes."""
    s = (raw or "").strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"'):
        s = s[1:-1]
    return s


def parse_id_list(raw: Optional[str], name: str) -> FrozenSet[int]:
    out = set()
    for tok in (raw or "").split(","):
        tok = tok.strip()
        if not tok:
            continue
        if not tok.isdigit():
            raise ConfigurationError(f"{name}: '{tok}' is not a numeric Discord id")
        out.add(int(tok))
    return frozenset(out)


def _env_int(env: Mapping[str, str], key: str, default: int, problems: List[str]) -> int:
    raw = (env.get(key) or "").strip()
    if raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        problems.append(f"{key} must be an integer, got '{raw}'")
        return default


def load_json_config(path) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}
    try:
        data = json.loads(p.read_text(encoding="utf-8") or "{}")
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"cannot read {p}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{p} must hold a JSON object")
    return data


def google_credentials(env: Mapping[str, str]) -> Dict[str, Any]:
    """
    Service-account info for gspread. Either the whole key file as
    GOOGLE_SERVICE_ACCOUNT_JSON, or GOOGLE_SERVICE_ACCOUNT_EMAIL plus
    GOOGLE_PRIVATE_KEY (with literal \\n sequences, as most hosts store it).
    """
    raw = sanitize_env_value(env.get("GOOGLE_SERVICE_ACCOUNT_JSON"))
    if raw:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"GOOGLE_SERVICE_ACCOUNT_JSON is not valid JSON: {e}") from e
        if not isinstance(data, dict) or not data.get("client_email") or not data.get("private_key"):
            raise ConfigurationError("GOOGLE_SERVICE_ACCOUNT_JSON needs client_email and private_key")
        data.setdefault("token_uri", GOOGLE_TOKEN_URI)
        return data

    email = sanitize_env_value(env.get("GOOGLE_SERVICE_ACCOUNT_EMAIL"))
    key = sanitize_env_value(env.get("GOOGLE_PRIVATE_KEY")).replace("\\n", "\n")
    missing = [n for n, v in (("GOOGLE_SERVICE_ACCOUNT_EMAIL", email), ("GOOGLE_PRIVATE_KEY", key)) if not v]
    if missing:
        raise ConfigurationError(
            "Google credentials missing: set GOOGLE_SERVICE_ACCOUNT_JSON or " + " + ".join(missing)
        )
    return {
        "type": "service_account",
        "client_email": email,
        "private_key": key,
        "token_uri": GOOGLE_TOKEN_URI,
    }


@dataclass(frozen=True)
class Settings:
    discord_token: str
    staff_role_ids: FrozenSet[int]
    spreadsheet_id: str
    google_credentials: Dict[str, Any] = field(repr=False)

    mention_message: str = CONFIG_DEFAULTS["mention_message"]
    command_prefix: str = "!"
    resolution_tag_name: str = "Resolved"
    datasheet_init: str = "init"
    datasheet_response: str = "response"
    datasheet_resolve: str = "resolve"
    utc_offset: int = 0  # minutes

    forum_ids: FrozenSet[int] = frozenset()
    sheets_max_retries: int = 5
    sheets_throttle_ms: int = 200
    dead_letter_path: str = "dead_letters.jsonl"
    port: int = 10000
    enable_web_server: bool = True
    enable_cmd_ping: bool = True
    enable_mention_reply: bool = True
    log_level: str = "DEBUG"

    def sheet_for(self, kind: str) -> str:
        return {
            "init": self.datasheet_init,
            "response": self.datasheet_response,
            "resolve": self.datasheet_resolve,
        }[kind]

    def watches(self, forum_id: int) -> bool:
        return not self.forum_ids or forum_id in self.forum_ids


def load_settings(path=None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings; every problem found is reported in one ConfigurationError."""
    env = os.environ if env is None else env
    path = path or env.get("SUPPORTCREW_CONFIG") or DEFAULT_CONFIG_PATH
    problems: List[str] = []

    file_cfg = load_json_config(path)
    cfg = dict(CONFIG_DEFAULTS)
    for key, env_key in CONFIG_KEYS.items():
        if key in file_cfg and file_cfg[key] is not None:
            cfg[key] = file_cfg[key]
        if (env.get(env_key) or "").strip():
            cfg[key] = sanitize_env_value(env.get(env_key))

    for key in CONFIG_KEYS:
        if key != "utc_offset" and not str(cfg[key]).strip():
            problems.append(f"{key} must not be empty")

    try:
        utc_offset = parse_utc_offset(cfg["utc_offset"])
    except ConfigurationError as e:
        problems.append(str(e)); utc_offset = 0

    token = sanitize_env_value(env.get("DISCORD_BOT_TOKEN") or env.get("DISCORD_TOKEN"))
    if not token or len(token) < 20:
        problems.append("DISCORD_BOT_TOKEN missing or too short")

    staff: FrozenSet[int] = frozenset()
    try:
        staff = parse_id_list(env.get("DISCORD_SUPPORT_ROLE_ID"), "DISCORD_SUPPORT_ROLE_ID")
        if not staff:
            problems.append("DISCORD_SUPPORT_ROLE_ID must list at least one role id")
    except ConfigurationError as e:
        problems.append(str(e))

    forum_ids: FrozenSet[int] = frozenset()
    try:
        forum_ids = parse_id_list(env.get("SUPPORT_FORUM_IDS"), "SUPPORT_FORUM_IDS")
    except ConfigurationError as e:
        problems.append(str(e))

    sheet_id = sanitize_env_value(env.get("GOOGLE_SPREADSHEET_ID") or env.get("GSHEET_ID"))
    if not sheet_id:
        problems.append("GOOGLE_SPREADSHEET_ID not set")

    creds: Dict[str, Any] = {}
    try:
        creds = google_credentials(env)
    except ConfigurationError as e:
        problems.append(str(e))

    max_retries = _env_int(env, "SHEETS_MAX_RETRIES", 5, problems)
    throttle_ms = _env_int(env, "SHEETS_THROTTLE_MS", 200, problems)
    port = _env_int(env, "PORT", 10000, problems)
    if max_retries < 1:
        problems.append("SHEETS_MAX_RETRIES must be at least 1")

    if problems:
        raise ConfigurationError("; ".join(problems))

    return Settings(
        discord_token=token,
        staff_role_ids=staff,
        spreadsheet_id=sheet_id,
        google_credentials=creds,
        mention_message=str(cfg["mention_message"]),
        command_prefix=str(cfg["command_prefix"]),
        resolution_tag_name=str(cfg["resolution_tag_name"]),
        datasheet_init=str(cfg["datasheet_init"]),
        datasheet_response=str(cfg["datasheet_response"]),
        datasheet_resolve=str(cfg["datasheet_resolve"]),
        utc_offset=utc_offset,
        forum_ids=forum_ids,
        sheets_max_retries=max_retries,
        sheets_throttle_ms=max(0, throttle_ms),
        dead_letter_path=(env.get("DEAD_LETTER_PATH") or "dead_letters.jsonl").strip(),
        port=port,
        enable_web_server=env_bool("ENABLE_WEB_SERVER", True, env),
        enable_cmd_ping=env_bool("ENABLE_CMD_PING", True, env),
        enable_mention_reply=env_bool("ENABLE_MENTION_REPLY", True, env),
        log_level=(env.get("LOG_LEVEL") or "DEBUG").strip().upper(),
    )
