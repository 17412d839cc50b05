#!/usr/bin/env python3
"""
Interactive terminal for termpilot.

Plain lines are natural-language requests: they go through the model pipeline
and the verified commands are run by the session executor. While the pipeline
is waiting on a question, the next line is taken as the answer.

Supported commands:
- /help                     Show help
- /sh CMD | /su CMD         Run CMD directly (optionally as root)
- /env direct|isolated      Switch execution environment
- /boot                     Boot the isolated environment
- /clear                    Clear the terminal history
- /history                  Print the terminal history
- /cwd                      Show the isolated working directory
- /export STAGE PATH        Save a stage conversation transcript
- /import STAGE PATH        Load a stage conversation transcript
- /set-key                  Store the model API key in the system keyring
- /quit                     Exit
"""
from __future__ import annotations

import argparse
import getpass
import logging
import queue
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from cloud_agent.cloud_client import OpenAIModelService, store_api_key
from cloud_agent.stage import StageProfile, create_stages
from config import Config, ConfigManager, StageSettings, get_config_manager, load_stage_settings
from local_agent.context_log import HistoryLog, TerminalEntry
from local_agent.executor import ExecutionEnvironment, SessionExecutor
from local_agent.knowledge_base import DocumentationResolver
from orchestrator import PipelineOrchestrator, PipelineState, commands_from_payload
from utils import runner
from utils.root_files import RootFileAccessor

logger = logging.getLogger(__name__)


def parse_environment(name: str) -> ExecutionEnvironment:
    try:
        return ExecutionEnvironment(name.strip().lower())
    except ValueError:
        raise ValueError(f"Unknown environment {name!r}; use 'direct' or 'isolated'") from None


def run_final_commands(executor: SessionExecutor, payload: str) -> int:
    """Run the payload's commands one after another. Returns how many ran."""
    commands = commands_from_payload(payload)
    if not commands:
        print("⚠️  Verified payload contained no commands.")
        return 0
    for cmd in commands:
        executor.execute(cmd).result()
    return len(commands)


def format_entry(entry: TerminalEntry) -> str:
    text = entry.command
    if entry.output:
        text = f"{text}\n{entry.output}"
    return f"❌ {text}" if entry.is_error else text


class Session:
    """Wires config, stages, pipeline and executor together for the terminal."""

    def __init__(self, config: Config, *, environment: Optional[ExecutionEnvironment] = None):
        self.config = config
        runner.set_log_file(config.paths.command_log)
        self.files = RootFileAccessor(
            use_root=config.security.use_root_for_files,
            su_binary=config.session.su_binary,
        )
        self.history = HistoryLog()
        self.executor = SessionExecutor(
            self.history,
            environment=environment or parse_environment(config.session.default_environment),
            chroot_dir=config.session.chroot_dir,
            boot_script=config.session.boot_script,
            su_binary=config.session.su_binary,
            command_timeout=config.session.command_timeout_seconds,
            max_workers=config.session.max_workers,
        )
        settings = load_stage_settings(config.pipeline.model_config_file, self.files)
        self.stages = create_stages(settings, self._make_service, self.files)
        self.pipeline = PipelineOrchestrator(
            self.stages,
            DocumentationResolver(config.paths.knowledge_base_dir, self.files),
            on_final_command=self._on_final_command,
            on_ask_user=self._on_ask_user,
            on_stage_response=self._on_stage_response,
            on_failure=self._on_failure,
            max_verification_retries=config.pipeline.max_verification_retries,
            stage_timeout=config.pipeline.stage_timeout_seconds,
        )

    def _make_service(self, profile: StageProfile, settings: StageSettings) -> OpenAIModelService:
        llm = self.config.llm
        return OpenAIModelService(
            settings.model_id or llm.model or profile.model_id,
            api_key=settings.api_key,
            base_url=llm.base_url,
            temperature=llm.temperature,
            timeout=llm.request_timeout_seconds,
            prefer_keyring=self.config.security.prefer_keyring,
        )

    def start(self, boot: bool = True) -> None:
        if boot and self.config.session.boot_on_start:
            self.executor.boot_isolated_environment()
            if self.config.session.initial_directory:
                self.executor.execute(f"cd {self.config.session.initial_directory}")

    def close(self) -> None:
        self.pipeline.close()
        self.executor.shutdown(wait=False)

    # ---------- pipeline sinks ----------
    def _on_stage_response(self, stage: str, text: str) -> None:
        print(f"☁ {stage} replied ({len(text)} chars)")

    def _on_final_command(self, payload: str) -> None:
        print("✅ Commands verified:")
        print(payload)
        run_final_commands(self.executor, payload)

    def _on_ask_user(self, question: str) -> None:
        print(f"❓ {question}")

    def _on_failure(self, reason: str) -> None:
        print(f"❌ Could not produce verified commands: {reason}")


def _watch_history(history: HistoryLog, stop: threading.Event) -> None:
    q = history.subscribe()
    shown = 0
    try:
        while not stop.is_set():
            try:
                snap = q.get(timeout=0.2)
            except queue.Empty:
                continue
            if len(snap) < shown:  # cleared
                shown = 0
            for entry in snap[shown:]:
                print(format_entry(entry))
            shown = len(snap)
    finally:
        history.unsubscribe(q)


def print_help() -> None:
    print(__doc__.split("Supported commands:", 1)[1].rstrip())


def _set_key() -> None:
    key = getpass.getpass("Enter your model API key: ").strip()
    if not key:
        print("No key entered.")
        return
    try:
        store_api_key(key)
        print("✓ API key saved to system keyring.")
    except Exception as e:
        print(f"❌ Failed to save to keyring: {e}")


def handle_line(session: Session, line: str) -> bool:
    """Process one input line. Returns False when the loop should stop."""
    if line in ("/quit", "/exit"):
        return False
    if session.pipeline.state is PipelineState.ASKING_USER and not line.startswith("/"):
        session.pipeline.submit_user_response(line)
        return True
    if line == "/help":
        print_help()
    elif line.startswith("/sh ") or line.startswith("/su "):
        session.executor.execute(line[4:], privileged=line.startswith("/su "))
    elif line.startswith("/env"):
        parts = line.split()
        if len(parts) != 2:
            print(f"Current environment: {session.executor.environment.value}")
        else:
            try:
                session.executor.set_environment(parse_environment(parts[1]))
            except ValueError as e:
                print(e)
    elif line == "/boot":
        if session.executor.boot_isolated_environment() is None:
            print("Isolated boot already initiated.")
    elif line == "/clear":
        session.executor.execute("clear")
    elif line == "/history":
        for entry in session.history.snapshot():
            print(format_entry(entry))
    elif line == "/cwd":
        print(session.executor.working_directory)
    elif line.startswith("/export ") or line.startswith("/import "):
        parts = line.split(None, 2)
        stage = session.stages.get(parts[1]) if len(parts) == 3 else None
        if stage is None:
            print(f"Usage: {parts[0]} STAGE PATH   (stages: {', '.join(session.stages)})")
        else:
            try:
                if parts[0] == "/export":
                    stage.export_history(parts[2])
                else:
                    stage.load_history(parts[2])
                print(f"✓ {parts[0][1:]} {stage.name}: {parts[2]}")
            except OSError as e:
                print(f"❌ {e}")
    elif line == "/set-key":
        _set_key()
    elif line.startswith("/"):
        print("Unknown command. Type /help.")
    else:
        session.pipeline.submit(line)
    return True


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Natural-language terminal")
    parser.add_argument("query", nargs="*", help="run a single request and exit")
    parser.add_argument("--config", type=Path, help="path to config.json")
    parser.add_argument("--env", choices=[e.value for e in ExecutionEnvironment])
    parser.add_argument("--no-boot", action="store_true", help="do not boot the isolated environment")
    parser.add_argument("--init-config", action="store_true", help="write the effective config file and exit")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    manager = ConfigManager(config_file=args.config) if args.config else get_config_manager()
    if args.init_config:
        manager.save_config()
        print(f"✓ Config written to {manager.config_file}")
        return 0
    session = Session(manager.config, environment=parse_environment(args.env) if args.env else None)
    stop = threading.Event()
    watcher = threading.Thread(target=_watch_history, args=(session.history, stop), daemon=True)
    watcher.start()
    session.start(boot=not args.no_boot)

    try:
        if args.query:
            state = session.pipeline.submit(" ".join(args.query)).result()
            return 0 if state is PipelineState.DONE else 1

        print("termpilot: type /help for commands.\n")
        while True:
            try:
                line = input("> ").strip()
            except EOFError:
                print()
                break
            if line and not handle_line(session, line):
                break
        return 0
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    finally:
        stop.set()
        session.close()


if __name__ == "__main__":
    sys.exit(main())
