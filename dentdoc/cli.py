#!/usr/bin/env python3
"""Command line front end for the capture core.

    dentdoc devices
    dentdoc record [--device NAME] [--segments-out FILE]
    dentdoc render SEGMENTS_JSON OUTPUT
    dentdoc vad-file INPUT OUTPUT
    dentdoc enroll NAME AUDIO [--role ROLE]
    dentdoc identify AUDIO UTTERANCES_JSON
    dentdoc profiles list|delete ID
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Iterable

from .config import configure_logging, get_cfg
from .errors import DentDocError
from .markers import Segment
from .session import SessionController


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dentdoc", description="DentDoc audio capture tools")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("devices", help="List capture devices")

    record_parser = subparsers.add_parser("record", help="Record until Enter is pressed")
    record_parser.add_argument("--device", default=None, help="Capture device name")
    record_parser.add_argument(
        "--delete-old", action="store_true", help="Delete earlier recordings before starting"
    )
    record_parser.add_argument("--segments-out", help="Write the speech segments to this JSON file")

    render_parser = subparsers.add_parser("render", help="Render a speech-only file from segments")
    render_parser.add_argument("segments", help="JSON file holding a list of segments")
    render_parser.add_argument("output")

    vad_parser = subparsers.add_parser("vad-file", help="Strip silence from an existing file")
    vad_parser.add_argument("input")
    vad_parser.add_argument("output")

    enroll_parser = subparsers.add_parser("enroll", help="Create a voice profile")
    enroll_parser.add_argument("name")
    enroll_parser.add_argument("audio")
    enroll_parser.add_argument("--role", default=None)

    identify_parser = subparsers.add_parser("identify", help="Label speakers of a transcript")
    identify_parser.add_argument("audio")
    identify_parser.add_argument("utterances", help="JSON file with {speaker,start,end,text} items")

    profiles_parser = subparsers.add_parser("profiles", help="Manage voice profiles")
    profile_commands = profiles_parser.add_subparsers(dest="profiles_command", required=True)
    profile_commands.add_parser("list", help="List stored profiles")
    delete_parser = profile_commands.add_parser("delete", help="Delete a profile by id")
    delete_parser.add_argument("profile_id")
    return parser


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _cmd_devices(controller: SessionController) -> int:
    devices = controller.list_devices()
    if not devices:
        print("[cli] no capture devices found", flush=True)
        return 1
    for device in devices:
        print(f"{device.backend}\t{device.id}\t{device.name}")
    return 0


def _cmd_record(controller: SessionController, args: argparse.Namespace) -> int:
    path = controller.start(args.delete_old, args.device)
    print(f"[cli] recording to {path}; press Enter to stop", flush=True)
    try:
        sys.stdin.readline()
    except KeyboardInterrupt:
        print("\n[cli] interrupted, discarding recording", flush=True)
        controller.cancel()
        return 130
    segments = controller.stop()
    if not segments:
        print("[cli] no speech detected; recording discarded", flush=True)
        return 0
    payload = [segment.to_dict() for segment in segments]
    if args.segments_out:
        Path(args.segments_out).write_text(json.dumps(payload, indent=2), encoding="utf-8")
        print(f"[cli] wrote {len(segments)} segment(s) to {args.segments_out}", flush=True)
    else:
        print(json.dumps(payload, indent=2))
    return 0


def _print_render(result) -> None:
    print(
        json.dumps(
            {
                "path": str(result.path),
                "durationMs": result.total_duration_ms,
                "speechMap": [entry.to_dict() for entry in result.speech_map],
            },
            indent=2,
        )
    )


def _cmd_render(controller: SessionController, args: argparse.Namespace) -> int:
    segments = [Segment.from_dict(item) for item in _load_json(args.segments)]
    _print_render(controller.render_speech_only(segments, args.output))
    return 0


def _cmd_vad_file(controller: SessionController, args: argparse.Namespace) -> int:
    result = controller.process_file_with_vad(args.input, args.output)
    if result is None:
        print(f"[cli] no speech found in {args.input}", flush=True)
        return 1
    _print_render(result)
    return 0


def _cmd_profiles(controller: SessionController, args: argparse.Namespace) -> int:
    if args.profiles_command == "list":
        for profile in controller.list_profiles():
            print(
                f"{profile.id}\t{profile.label}\t"
                f"confirmed={len(profile.confirmed_embeddings)} "
                f"pending={len(profile.pending_embeddings)}"
            )
        return 0
    controller.delete_profile(args.profile_id)
    print(f"[cli] deleted profile {args.profile_id}", flush=True)
    return 0


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(get_cfg())
    controller = SessionController()

    try:
        if args.command == "devices":
            return _cmd_devices(controller)
        if args.command == "record":
            return _cmd_record(controller, args)
        if args.command == "render":
            return _cmd_render(controller, args)
        if args.command == "vad-file":
            return _cmd_vad_file(controller, args)
        if args.command == "enroll":
            profile = controller.enroll(args.name, args.audio, args.role)
            print(f"[cli] enrolled {profile.label} ({profile.id})", flush=True)
            return 0
        if args.command == "identify":
            mapping = controller.identify(args.audio, _load_json(args.utterances))
            print(json.dumps(mapping, indent=2, ensure_ascii=False))
            return 0
        if args.command == "profiles":
            return _cmd_profiles(controller, args)
    except DentDocError as exc:
        print(f"[cli] {exc}", file=sys.stderr, flush=True)
        return 2

    parser.error("no command specified")
    return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
