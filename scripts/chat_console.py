"""
Terminal client for the SM AI Partner core.

Streams replies into the configured session store and prints them as they
arrive. Ctrl+C while a reply is streaming stops it and keeps the partial text.

Commands:
  /new               start a new chat
  /list              list sessions
  /use <n>           switch to session number n from /list
  /regen             regenerate the last reply
  /image <prompt>    generate an image (Image Studio)
  /speak             toggle speech for the last reply
  /mode <name>       education | coding | image
  /deep              toggle deep think
  /autospeak         toggle auto-speak
  /usage             show today's quota ledger
  /premium           unlock premium (upgrade trigger)
  /quit              exit

Run:
  python scripts/chat_console.py [--storage file] [--audio-sink sounddevice]
"""
from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path

# Ensure repository root is on sys.path so 'src' package can be imported when
# executing this script from the scripts/ directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from src.partner.config import reset_settings
from src.partner.domain.chat_models import AppMode, MessageRole, PreferencesUpdate, SendRequest
from src.partner.services.partner_app import PartnerApp, SendResult


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chat with SM AI Partner from the terminal")
    parser.add_argument("--storage", choices=["memory", "file", "redis"], help="Override PARTNER_STORAGE_IMPL")
    parser.add_argument("--audio-sink", choices=["null", "sounddevice"], help="Override PARTNER_AUDIO_SINK")
    return parser.parse_args(argv)


class ConsoleChat:
    def __init__(self, app: PartnerApp) -> None:
        self.app = app
        self._printed = 0

    def _on_chunk(self, _message_id: str, text: str) -> None:
        print(text[self._printed:], end="", flush=True)
        self._printed = len(text)

    def _report(self, result: SendResult) -> None:
        if not result.approved:
            print(f"[limit] {result.decision.reason}. Use /premium to upgrade.")
            return
        outcome = result.outcome
        if outcome is None:
            print("[nothing to regenerate]")
            return
        if outcome.error is not None:
            print(f"\n[{outcome.error.kind.value}] {outcome.text}")
        elif outcome.cancelled:
            print("\n[stopped]")
        else:
            print()
        if self.app.state.last_error and self.app.state.last_error.banner:
            print(f"[!] {self.app.state.last_error.message}")

    async def _run_streaming(self, coro) -> SendResult:
        loop = asyncio.get_running_loop()
        self._printed = 0
        installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, self.app.stop)
            installed = True
        except (NotImplementedError, RuntimeError):
            pass
        try:
            return await coro
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    def _last_reply(self):
        sid = self.app.state.active_session_id
        if not sid:
            return None
        return next(
            (m for m in reversed(self.app.sessions.list_messages(sid)) if m.role == MessageRole.MODEL and m.text),
            None,
        )

    async def handle(self, line: str) -> bool:
        cmd, _, arg = line.partition(" ")
        prefs = self.app.preferences
        if cmd == "/quit":
            return False
        if cmd == "/new":
            self.app.sessions.new_chat()
            print("[new chat]")
        elif cmd == "/list":
            for idx, summary in enumerate(self.app.sessions.list_summaries(), start=1):
                marker = "*" if summary.active else " "
                print(f"{marker} {idx}. {summary.title} ({summary.message_count} messages)")
        elif cmd == "/use":
            summaries = self.app.sessions.list_summaries()
            try:
                chosen = summaries[int(arg) - 1]
            except (ValueError, IndexError):
                print("[unknown session]")
                return True
            self.app.sessions.select_session(chosen.id)
            for msg in self.app.sessions.list_messages(chosen.id):
                print(f"{msg.role.value}> {msg.text or '[image]'}")
        elif cmd == "/regen":
            self._report(await self._run_streaming(self.app.regenerate(on_chunk=self._on_chunk)))
        elif cmd == "/image":
            result = await self.app.generate_image(arg)
            if result.approved and result.outcome and result.outcome.error is None:
                print("[image generated and stored in the session]")
            else:
                self._report(result)
        elif cmd == "/speak":
            reply = self._last_reply()
            if reply is None:
                print("[no reply to speak]")
            else:
                playing = await self.app.speak(reply.text, reply.id)
                print("[speaking]" if playing else "[speech stopped]")
        elif cmd == "/mode":
            try:
                mode = AppMode(arg.strip().lower())
            except ValueError:
                print("[modes: education, coding, image]")
                return True
            prefs.update(PreferencesUpdate(mode=mode))
            self.app.sessions.new_chat()
            print(f"[{mode.label}]")
        elif cmd == "/deep":
            print(f"[deep think {'on' if prefs.toggle('deep_think').deep_think else 'off'}]")
        elif cmd == "/autospeak":
            print(f"[auto-speak {'on' if prefs.toggle('auto_speak').auto_speak else 'off'}]")
        elif cmd == "/usage":
            ledger = self.app.gating.ledger.snapshot()
            print(ledger.model_dump_json(by_alias=True, indent=2))
        elif cmd == "/premium":
            self.app.gating.ledger.set_premium(True)
            print("[premium unlocked]")
        else:
            current = prefs.load()
            request = SendRequest(prompt=line, deep_think=current.deep_think, mode=current.mode)
            result = await self._run_streaming(self.app.send(request, on_chunk=self._on_chunk))
            if current.mode == AppMode.IMAGE and result.approved and result.outcome and not result.outcome.error:
                print("[image generated and stored in the session]")
            else:
                self._report(result)
        return True

    async def loop(self) -> None:
        while True:
            try:
                line = (await asyncio.to_thread(input, "you> ")).strip()
            except EOFError:
                break
            if not line:
                continue
            if not await self.handle(line):
                break
        self.app.stop_audio()


def main(argv=None) -> int:
    load_dotenv()
    args = parse_args(argv)
    if args.storage:
        os.environ["PARTNER_STORAGE_IMPL"] = args.storage
    if args.audio_sink:
        os.environ["PARTNER_AUDIO_SINK"] = args.audio_sink
    reset_settings()
    console = ConsoleChat(PartnerApp())
    try:
        asyncio.run(console.loop())
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
