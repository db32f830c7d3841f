# gfy/app.py
from __future__ import annotations
import argparse, logging, platform, signal, sys
from pathlib import Path
from typing import List, Optional

from PyQt6.QtCore import QCoreApplication, QTimer

from .constants import APP_NAME, __version__
from .core.prompting import STYLES, build_fix_prompt, interpret_reply, validate_selection
from .core.session import InferenceSession
from .infra.llm.errors import InferenceError
from .logging_config import init_logging
from .paths import default_data_dir, log_paths, settings_path
from .settings import load_settings

EXIT_OK = 0
EXIT_INIT_FAILED = 1
EXIT_REQUEST_FAILED = 2
EXIT_BAD_INPUT = 3
EXIT_INTERRUPTED = 130


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="gfy", description=f"{APP_NAME}: talk to a local Ollama model")
    p.add_argument("prompt", nargs="*", help="Prompt text (read from stdin when omitted)")
    p.add_argument("--model", type=str, default=None, help="Model name, e.g. gemma3:4b")
    p.add_argument("--base-url", type=str, default=None, help="Ollama API root, e.g. http://localhost:11434/api")
    p.add_argument("--system", type=str, default=None, help="System prompt")
    p.add_argument("--no-stream", action="store_true", help="Wait for the whole reply instead of streaming tokens")

    # grammar-fix mode
    p.add_argument("--fix", action="store_true", help="Treat the input as text to proofread")
    p.add_argument("--style", type=str, default=None, choices=sorted(STYLES), help="Style for --fix")

    # logging / paths
    p.add_argument("--data-dir", type=str, default=None, help="Override data directory")
    p.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING, ERROR")
    p.add_argument("--no-console-log", action="store_true", help="Disable console logging")
    p.add_argument("--version", action="version", version=f"{APP_NAME} {__version__}")
    return p.parse_args(argv)


def read_prompt(args: argparse.Namespace) -> str:
    if args.prompt:
        return " ".join(args.prompt)
    if not sys.stdin.isatty():
        return sys.stdin.read()
    return ""


def run_once(app: QCoreApplication, session: InferenceSession, prompt: str, *,
             stream: bool, fix: bool) -> int:
    """Wait for readiness, run one request, and return an exit code."""
    log = logging.getLogger("cli")
    outcome = {"code": EXIT_OK}

    def finish(code: int):
        outcome["code"] = code
        app.quit()

    def on_token(tok: str):
        sys.stdout.write(tok)
        sys.stdout.flush()

    def on_complete(text: str):
        if stream:
            sys.stdout.write("\n")
        else:
            reply = interpret_reply(text) if fix else text
            if reply is not None:
                sys.stdout.write(reply + "\n")
            else:
                log.info("No changes suggested.")
        sys.stdout.flush()
        finish(EXIT_OK)

    def on_error(err: InferenceError):
        print(f"error ({err.kind.value}): {err}", file=sys.stderr)
        finish(EXIT_REQUEST_FAILED)

    def on_initialized(err: Optional[InferenceError]):
        if err is not None:
            print(f"{APP_NAME} could not start: {err}", file=sys.stderr)
            finish(EXIT_INIT_FAILED)
            return
        session.generate(prompt, on_complete=on_complete, on_error=on_error,
                         on_token=on_token if stream else None)

    def on_sigint(*_):
        log.info("Interrupted; cancelling request")
        session.cancel()
        finish(EXIT_INTERRUPTED)

    # The session may already be settled if its probe ran before we got here.
    if session.last_initialization_error() is not None or session.is_ready():
        QTimer.singleShot(0, lambda: on_initialized(session.last_initialization_error()))
    else:
        session.initialized.connect(on_initialized)

    previous = signal.signal(signal.SIGINT, on_sigint)
    # Give the interpreter a chance to run the SIGINT handler while Qt's loop spins.
    ticker = QTimer()
    ticker.timeout.connect(lambda: None)
    ticker.start(200)
    try:
        app.exec()
    finally:
        ticker.stop()
        if previous is not None:
            signal.signal(signal.SIGINT, previous)
        session.close()
    return outcome["code"]


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    prompt = read_prompt(args)
    if args.fix and not validate_selection(prompt):
        print("Nothing to fix: input is empty or longer than 4096 characters / 256 words.", file=sys.stderr)
        return EXIT_BAD_INPUT
    if not prompt.strip():
        print("No prompt given.", file=sys.stderr)
        return EXIT_BAD_INPUT

    data_dir = Path(args.data_dir).expanduser().resolve() if args.data_dir else default_data_dir()
    logs_dir, log_path = log_paths(data_dir)
    cfg_path = settings_path(data_dir)
    cfg = load_settings(cfg_path)

    level = (args.log_level or cfg["logging"]["level"]).upper()
    init_logging(
        logs_dir,
        level=level,
        max_bytes=int(cfg["logging"]["max_bytes"]),
        backup_count=int(cfg["logging"]["backup_count"]),
        also_console=(not args.no_console_log),
    )
    log = logging.getLogger("boot")
    log.info("=== %s %s starting ===", APP_NAME, __version__)
    log.info("Platform: %s | Python: %s", platform.platform(), platform.python_version())
    log.info("Data dir: %s | Log file: %s", data_dir, log_path)
    log.info("Settings: %s", cfg_path)

    if args.base_url:
        cfg["ollama"]["base_url"] = args.base_url
    if args.fix:
        prompt = build_fix_prompt(prompt, args.style or cfg["prompt"].get("style") or "Regular")

    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
    session = InferenceSession.from_settings(cfg, model=args.model, system_prompt=args.system)
    log.info("Model: %s @ %s", session.model, cfg["ollama"]["base_url"])

    # Proofreading output is all-or-nothing, so it never streams.
    stream = not (args.no_stream or args.fix)
    return run_once(app, session, prompt, stream=stream, fix=args.fix)


if __name__ == "__main__":
    raise SystemExit(main())
