# voiceless/config.py
from __future__ import annotations

from dataclasses import dataclass
import json
import os

# Optional: loads .env locally if installed, but will NOT override real env vars
try:
    from dotenv import load_dotenv
except Exception:
    load_dotenv = None


def _normalize_env(v: str | None) -> str:
    """
    Returns 'dev' or 'prod' only.
    Defaults to 'prod' if unset/unknown.
    """
    s = (v or "").strip().lower()
    if s in ("dev", "development", "test", "testing"):
        return "dev"
    if s in ("prod", "production", "main", "live"):
        return "prod"
    return "prod"


def _env_str(key: str, default: str = "") -> str:
    v = os.getenv(key)
    return v.strip() if v is not None else default


def _env_bool(key: str, default: bool) -> bool:
    s = (os.getenv(key) or "").strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off"):
        return False
    return default


def _env_int(key: str, default: int) -> int:
    try:
        return int((os.getenv(key) or "").strip())
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    try:
        return float((os.getenv(key) or "").strip())
    except ValueError:
        return default


# ---------------- targets ----------------

@dataclass(frozen=True)
class TargetServer:
    server: int
    channels: tuple[int, ...] = ()


@dataclass(frozen=True)
class TargetUser:
    user: int
    voice: str
    servers: tuple[TargetServer, ...] = ()


def _as_id(value, where: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Invalid target config: {where} must be an id, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RuntimeError(f"Invalid target config: {where} must be an id, got {value!r}") from None


def parse_targets(obj) -> tuple[TargetUser, ...]:
    """
    Accepts:
      {"users": [{"user": 1, "voice": "alloy", "servers": [{"server": 2, "channels": [3, 4]}]}]}
    """
    if not isinstance(obj, dict) or not isinstance(obj.get("users", []), list):
        raise RuntimeError("Invalid target config: expected an object with a 'users' list")

    users: list[TargetUser] = []
    for i, raw in enumerate(obj.get("users", [])):
        if not isinstance(raw, dict):
            raise RuntimeError(f"Invalid target config: users[{i}] must be an object")

        voice = raw.get("voice")
        if not isinstance(voice, str) or not voice.strip():
            raise RuntimeError(f"Invalid target config: users[{i}].voice must be a non-empty string")

        raw_servers = raw.get("servers", [])
        if not isinstance(raw_servers, list):
            raise RuntimeError(f"Invalid target config: users[{i}].servers must be a list")

        servers: list[TargetServer] = []
        for j, rs in enumerate(raw_servers):
            where = f"users[{i}].servers[{j}]"
            if not isinstance(rs, dict):
                raise RuntimeError(f"Invalid target config: {where} must be an object")
            channels = rs.get("channels", [])
            if not isinstance(channels, list):
                raise RuntimeError(f"Invalid target config: {where}.channels must be a list")
            servers.append(
                TargetServer(
                    server=_as_id(rs.get("server"), f"{where}.server"),
                    channels=tuple(_as_id(c, f"{where}.channels") for c in channels),
                )
            )

        users.append(TargetUser(user=_as_id(raw.get("user"), f"users[{i}].user"), voice=voice.strip(), servers=tuple(servers)))

    return tuple(users)


def load_targets(path: str) -> tuple[TargetUser, ...]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except FileNotFoundError:
        raise RuntimeError(f"Missing target config file: {path} (set VOICELESS_TARGETS_FILE)") from None
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Target config file {path} is not valid JSON: {e}") from None

    targets = parse_targets(obj)
    if not targets:
        print(f"[Voiceless] ⚠️ {path} lists no users; nothing will be spoken")
    return targets


# ---------------- settings ----------------

@dataclass(frozen=True)
class Settings:
    token: str
    openai_token: str
    env: str = "prod"  # dev or prod

    # ---------------- Bot / Commands ----------------
    command_prefix: str = "."
    silencer: str = ""
    idle_nickname: str = "Voiceless"

    # ---------------- Targets ----------------
    targets: tuple[TargetUser, ...] = ()

    # ---------------- OpenAI ----------------
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "alloy"
    openai_chat_model: str = "gpt-4o-mini"
    describe_attachments: bool = False
    attachment_detail: str = "low"
    max_attachment_tokens: int = 300
    attachment_prompt: str = "Briefly describe the attached images as if telling a friend what you posted."
    flavor_prompt: str = ""

    # ---------------- ElevenLabs (used instead of OpenAI TTS when a key is set) ----------------
    elevenlabs_token: str = ""
    elevenlabs_voice_id: str = ""
    elevenlabs_model: str = "eleven_turbo_v2_5"
    elevenlabs_stability: float = 0.5
    elevenlabs_similarity: float = 0.75

    # ---------------- Audio pipeline ----------------
    ffmpeg_path: str = "ffmpeg"
    encoder_timeout_seconds: float = 10.0
    decoder_timeout_seconds: float = 30.0


def load_settings() -> Settings:
    if load_dotenv is not None:
        load_dotenv(override=False)

    env = _normalize_env(os.getenv("VOICELESS_ENV") or os.getenv("ENV") or os.getenv("APP_ENV"))

    # ---------- DEBUG (safe: does NOT print token values) ----------
    def _safe_len(v: str | None) -> int:
        return len(v.strip()) if isinstance(v, str) else 0

    print("[ENV] VOICELESS_ENV =", env)
    for key in ("DISCORD_TOKEN_DEV", "DISCORD_TOKEN_PROD", "DISCORD_TOKEN", "OPENAI_API_KEY", "ELEVENLABS_API_KEY"):
        print(f"[ENV] {key} present?", key in os.environ, "len=", _safe_len(os.getenv(key)))

    # ---------- Token selection ----------
    # Priority:
    # 1) DISCORD_TOKEN_DEV / DISCORD_TOKEN_PROD depending on VOICELESS_ENV
    # 2) DISCORD_TOKEN / DISCORD_BOT_TOKEN
    if env == "dev":
        token = _env_str("DISCORD_TOKEN_DEV")
    else:
        token = _env_str("DISCORD_TOKEN_PROD")

    if not token:
        token = _env_str("DISCORD_TOKEN") or _env_str("DISCORD_BOT_TOKEN")

    if not token:
        raise RuntimeError(
            "Missing bot token.\n"
            "Set VOICELESS_ENV=dev and DISCORD_TOKEN_DEV=... for dev, OR\n"
            "set VOICELESS_ENV=prod and DISCORD_TOKEN_PROD=... for prod.\n"
            "Fallback supported: DISCORD_TOKEN / DISCORD_BOT_TOKEN."
        )

    openai_token = _env_str("OPENAI_API_KEY")
    if not openai_token:
        raise RuntimeError("Missing OpenAI API key. Set OPENAI_API_KEY=...")

    targets = load_targets(_env_str("VOICELESS_TARGETS_FILE") or "targets.json")

    defaults = Settings(token="", openai_token="")

    return Settings(
        token=token,
        openai_token=openai_token,
        env=env,
        command_prefix=_env_str("VOICELESS_PREFIX") or defaults.command_prefix,
        silencer=_env_str("VOICELESS_SILENCER"),
        idle_nickname=_env_str("VOICELESS_IDLE_NICKNAME") or defaults.idle_nickname,
        targets=targets,
        openai_tts_model=_env_str("OPENAI_TTS_MODEL") or defaults.openai_tts_model,
        openai_tts_voice=_env_str("OPENAI_TTS_VOICE") or defaults.openai_tts_voice,
        openai_chat_model=_env_str("OPENAI_CHAT_MODEL") or defaults.openai_chat_model,
        describe_attachments=_env_bool("OPENAI_DESCRIBE_ATTACHMENTS", defaults.describe_attachments),
        attachment_detail=_env_str("OPENAI_ATTACHMENT_DETAIL") or defaults.attachment_detail,
        max_attachment_tokens=_env_int("OPENAI_MAX_ATTACHMENT_TOKENS", defaults.max_attachment_tokens),
        attachment_prompt=_env_str("OPENAI_ATTACHMENT_PROMPT") or defaults.attachment_prompt,
        flavor_prompt=_env_str("OPENAI_FLAVOR_PROMPT"),
        elevenlabs_token=_env_str("ELEVENLABS_API_KEY"),
        elevenlabs_voice_id=_env_str("ELEVENLABS_VOICE_ID"),
        elevenlabs_model=_env_str("ELEVENLABS_MODEL") or defaults.elevenlabs_model,
        elevenlabs_stability=_env_float("ELEVENLABS_STABILITY", defaults.elevenlabs_stability),
        elevenlabs_similarity=_env_float("ELEVENLABS_SIMILARITY", defaults.elevenlabs_similarity),
        ffmpeg_path=_env_str("VOICELESS_FFMPEG") or defaults.ffmpeg_path,
        encoder_timeout_seconds=_env_float("VOICELESS_ENCODER_TIMEOUT", defaults.encoder_timeout_seconds),
        decoder_timeout_seconds=_env_float("VOICELESS_DECODER_TIMEOUT", defaults.decoder_timeout_seconds),
    )
