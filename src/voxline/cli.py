"""Command line interface for voicing lines and managing the cache."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from logging_setup import log_call, setup_logging
from voxline.config import load_config
from voxline.errors import ConfigError, VoxlineError
from voxline.service import VoxlineService
from voxline.voices import VoiceCatalog

logger = logging.getLogger(__name__)

__all__ = ["main"]


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


@log_call()
async def _cmd_resolve(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    async with VoxlineService.from_config(cfg) as svc:
        line = await svc.coordinator.resolve(
            args.character,
            args.text,
            args.voice,
            args.location,
            gender=args.gender,
            force=args.force,
        )
    _print_json(
        {
            "path": str(line.path),
            "character_id": line.character_id,
            "dialogue_id": line.dialogue_id,
            "text": line.text,
            "voice": str(line.voice),
            "cached": line.cached,
            "metadata": line.metadata,
        }
    )
    return 0


@log_call()
def _cmd_delete_character(args: argparse.Namespace) -> int:
    from db.store import SqlStore

    cfg = load_config(args.config)
    store = SqlStore(cfg.store.database_url)
    try:
        found = store.find_character(args.name, args.gender.strip().lower())
        deleted = store.delete_character(found.id) if found else False
    finally:
        store.close()
    _print_json({"name": args.name, "gender": args.gender, "deleted": deleted})
    return 0 if deleted else 1


@log_call()
async def _cmd_set_voice(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    async with VoxlineService.from_config(cfg) as svc:
        char = await svc.coordinator.set_character_voice(args.name, args.voice, args.location, gender=args.gender)
    _print_json({"id": char.id, "name": char.name, "gender": char.gender, "voice": str(char.voice)})
    return 0


def _cmd_lines(args: argparse.Namespace) -> int:
    from db.store import SqlStore
    from voxline.voices import GLOBAL, VoiceReference

    cfg = load_config(args.config)
    store = SqlStore(cfg.store.database_url)
    try:
        records = store.list_voice_lines(VoiceReference(args.voice, args.location or GLOBAL))
    finally:
        store.close()
    _print_json(
        [
            {"dialogue_id": r.key.dialogue_id, "path": str(r.path), "created_at": r.created_at, "metadata": r.metadata}
            for r in records
        ]
    )
    return 0


def _cmd_voices(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    catalog = VoiceCatalog(cfg.voices.root, language=cfg.voices.language)
    for ref in catalog.list_voices(args.game):
        print(f"{ref.location}\t{ref.name}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``voxline`` CLI."""

    parser = argparse.ArgumentParser(prog="voxline", description=__doc__)
    parser.add_argument("--config", type=Path, default=None, help="YAML config (default: $VOXLINE_CONFIG)")
    parser.add_argument("--log-dir", type=Path, default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_res = sub.add_parser("resolve", help="voice one line and print the artifact")
    p_res.add_argument("--character", required=True)
    p_res.add_argument("--text", required=True)
    p_res.add_argument("--voice", default=None)
    p_res.add_argument("--location", default=None, help="'global' or a game name")
    p_res.add_argument("--gender", default="")
    p_res.add_argument("--force", action="store_true", help="regenerate and replace a cached line")

    p_del = sub.add_parser("delete-character", help="delete a character with its lines")
    p_del.add_argument("--name", required=True)
    p_del.add_argument("--gender", default="")

    p_pin = sub.add_parser("set-voice", help="pin a character to a voice")
    p_pin.add_argument("--name", required=True)
    p_pin.add_argument("--gender", default="")
    p_pin.add_argument("--voice", required=True)
    p_pin.add_argument("--location", default=None, help="'global' or a game name")

    p_lines = sub.add_parser("lines", help="list cached lines generated with a voice")
    p_lines.add_argument("--voice", required=True)
    p_lines.add_argument("--location", default=None, help="'global' or a game name")

    p_voices = sub.add_parser("voices", help="list global and game voices")
    p_voices.add_argument("--game", default=None)

    args = parser.parse_args(argv)
    setup_logging(log_dir=args.log_dir)

    try:
        if args.cmd == "resolve":
            return asyncio.run(_cmd_resolve(args))
        if args.cmd == "delete-character":
            return _cmd_delete_character(args)
        if args.cmd == "set-voice":
            return asyncio.run(_cmd_set_voice(args))
        if args.cmd == "lines":
            return _cmd_lines(args)
        if args.cmd == "voices":
            return _cmd_voices(args)
    except ConfigError as exc:
        print(f"error: config_error: {exc}", file=sys.stderr)
        return 1
    except VoxlineError as exc:
        logger.debug("Command %s failed", args.cmd, exc_info=True)
        print(f"error: {exc.kind}: {exc}", file=sys.stderr)
        return 1
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
