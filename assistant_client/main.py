import argparse
import asyncio
import getpass
import sys
from pathlib import Path
from typing import Optional

from assistant_client.client import AssistantClient
from assistant_client.config import DEFAULT_CONFIG_PATH, ClientConfig, load_config
from assistant_client.errors import ClientError, LimitReachedError
from assistant_client.usage.stats import UNLIMITED
from assistant_client.utils.audio import chunk_duration_seconds, load_audio
from assistant_client.utils.logger import LOGGER, configure_logging, stop_logging
from assistant_client.voice.state import VoiceState


def _format_remaining(value: int) -> str:
    return "unlimited" if value == UNLIMITED else str(value)


async def run_login(client: AssistantClient, email: str, password: str) -> int:
    user = await client.auth.login(email, password)
    name = (user or {}).get("email") or email
    print(f"Logged in as {name}")
    return 0


async def run_logout(client: AssistantClient) -> int:
    await client.auth.logout()
    print("Logged out")
    return 0


async def run_usage(client: AssistantClient) -> int:
    gate = client.usage
    await gate.refresh()
    print(f"Messages remaining:      {_format_remaining(gate.messages_remaining)}")
    print(f"Voice minutes remaining: {_format_remaining(gate.voice_minutes_remaining)}")
    print(f"Photos remaining:        {_format_remaining(gate.photos_remaining)}")
    if gate.reset_time is not None and (
        gate.message_limit_reached
        or gate.voice_limit_reached
        or gate.photo_limit_reached
    ):
        print(f"Limits reset in {gate.format_countdown()}")
    return 0


async def run_voice(
    client: AssistantClient, audio_path: str, timeout: Optional[float]
) -> int:
    audio, sample_rate = load_audio(audio_path)
    LOGGER.info(
        "Loaded %s (%.2fs at %d Hz)",
        audio_path,
        chunk_duration_seconds(audio.nbytes, sample_rate),
        sample_rate,
    )
    try:
        await client.usage.refresh()
    except ClientError as exc:
        LOGGER.warning("Could not load usage before voice session: %s", exc)

    controller = client.voice_controller()
    controller.add_listener(
        lambda session: LOGGER.debug(
            "Voice session %s (elapsed=%ds)", session.state.value, session.elapsed_seconds
        )
    )
    try:
        await controller.connect()
        if not client.config.auto_start_session:
            session = await controller.wait_for_state(
                VoiceState.CONNECTED, VoiceState.ERROR, timeout=timeout
            )
            if session.state is VoiceState.CONNECTED:
                await controller.start_session()
        session = await controller.wait_for_state(
            VoiceState.SESSION_STARTED, VoiceState.ERROR, timeout=timeout
        )
        if session.state is VoiceState.ERROR:
            print(f"Voice session failed: {session.error_message}", file=sys.stderr)
            return 1

        controller.begin_capture()
        chunks = await controller.send_audio(audio)
        LOGGER.info("Sent %d audio chunks", chunks)
        session = await controller.wait_for_state(
            VoiceState.SPEAKING, VoiceState.ERROR, timeout=timeout
        )
        if session.current_transcription:
            print(f"You: {session.current_transcription}")
        if session.state is VoiceState.ERROR:
            print(f"Voice session failed: {session.error_message}", file=sys.stderr)
            return 1
        print(f"Assistant: {session.current_ai_response or ''}")
        return 0
    finally:
        await controller.end_session()


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Assistant API client")
    parser.add_argument(
        "--config",
        type=str,
        help=f"Path to YAML config (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--base-url", default=None, help="REST API base URL")
    parser.add_argument("--voice-url", default=None, help="Voice WebSocket URL")
    parser.add_argument(
        "--credentials",
        default=None,
        help="Credential file path; overrides config (in-memory if unset)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. DEBUG, INFO, TRACE); overrides config",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Optional log file path; overrides config",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Sign in and store credentials")
    login.add_argument("--email", required=True)
    login.add_argument(
        "--password", default=None, help="Prompted for when omitted"
    )

    sub.add_parser("logout", help="Sign out and clear stored credentials")
    sub.add_parser("usage", help="Show remaining usage allowances")

    voice = sub.add_parser("voice", help="Send one utterance from an audio file")
    voice.add_argument("audio_file", help="Audio file readable by soundfile")
    voice.add_argument(
        "--timeout",
        type=float,
        default=60.0,
        help="Seconds to wait for each server reply (<=0 waits forever)",
    )
    voice.add_argument(
        "--no-auto-start",
        dest="auto_start_session",
        action="store_false",
        default=None,
        help="Send start-session explicitly after connecting",
    )
    return parser.parse_args(argv)


def configure_from_args(args: argparse.Namespace) -> ClientConfig:
    config_path = Path(args.config).expanduser() if args.config else DEFAULT_CONFIG_PATH
    config = load_config(config_path)

    if args.base_url is not None:
        config.base_url = args.base_url
    if args.voice_url is not None:
        config.voice_url = args.voice_url
    if args.credentials is not None:
        config.credential_path = args.credentials
    if getattr(args, "auto_start_session", None) is not None:
        config.auto_start_session = args.auto_start_session
    if args.log_level is not None:
        config.log_level = args.log_level
    if args.log_file is not None:
        config.log_file = args.log_file

    configure_logging(config.log_level, config.log_file)
    if config_path.exists():
        LOGGER.info("Loaded client config from %s", config_path)
    else:
        LOGGER.info(
            "Client config file not found at %s; using defaults/CLI overrides",
            config_path,
        )
    return config


async def run(args: argparse.Namespace, config: ClientConfig) -> int:
    async with AssistantClient(config) as client:
        if args.command == "login":
            password = args.password or getpass.getpass("Password: ")
            return await run_login(client, args.email, password)
        if args.command == "logout":
            return await run_logout(client)
        if args.command == "usage":
            return await run_usage(client)
        timeout = args.timeout if args.timeout and args.timeout > 0 else None
        return await run_voice(client, args.audio_file, timeout)


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)
    config = configure_from_args(args)
    try:
        return asyncio.run(run(args, config))
    except LimitReachedError as exc:
        reset = exc.reset_time.isoformat() if exc.reset_time else "unknown"
        print(f"{exc} (resets at {reset})", file=sys.stderr)
        return 2
    except ClientError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except asyncio.TimeoutError:
        print("Timed out waiting for the voice server", file=sys.stderr)
        return 1
    finally:
        stop_logging()


if __name__ == "__main__":
    sys.exit(main())
