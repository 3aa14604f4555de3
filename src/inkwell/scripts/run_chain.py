"""CLI utility to run one skill chain against the configured backend."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from inkwell.ai.client import WIRE_APIS, AIClient
from inkwell.ai.orchestration.conversation import ConversationState
from inkwell.ai.orchestration.event_log import EventLogger
from inkwell.ai.orchestration.skill_chain import ChainResult, SkillChainDriver
from inkwell.ai.orchestration.skills import SkillCatalog, SkillDefinition, register_skill_tool
from inkwell.ai.orchestration.tool_dispatcher import RegistryToolDispatcher
from inkwell.ai.prompts import envelope_system_prompt, free_form_system_prompt
from inkwell.services.settings import Settings, SettingsStore
from inkwell.utils import logging as logging_utils

LOGGER = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a phase-gated skill chain for one prompt")
    parser.add_argument("prompt", help="User request to send")
    parser.add_argument("--system", type=Path, default=None, help="File containing a custom system prompt")
    parser.add_argument("--skills", type=Path, default=None, help="JSON file with a list of skill definitions")
    parser.add_argument("--free-form", action="store_true", help="Do not require control envelopes")
    parser.add_argument("--model", default=None, help="Override the configured model")
    parser.add_argument("--wire-api", choices=WIRE_APIS, default=None, help="Backend wire format")
    parser.add_argument("--max-follow-ups", type=int, default=None, help="Maximum chained steps")
    parser.add_argument("--settings", type=Path, default=None, help="Path to settings.json")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def _load_catalog(path: Path | None) -> SkillCatalog | None:
    if path is None:
        return None
    payload = json.loads(path.read_text(encoding="utf-8"))
    entries = payload.get("skills", []) if isinstance(payload, dict) else payload
    return SkillCatalog(SkillDefinition.from_mapping(entry) for entry in entries)


def _system_prompt(args: argparse.Namespace, settings: Settings, catalog: SkillCatalog | None) -> str:
    if args.system is not None:
        return args.system.read_text(encoding="utf-8")
    if not settings.require_envelope:
        return free_form_system_prompt()
    if catalog is None:
        return envelope_system_prompt()
    suggested = catalog.match(args.prompt)
    if suggested is not None:
        LOGGER.info("Prompt matches skill %s", suggested.name)
    return envelope_system_prompt(
        skill_names=catalog.names(),
        suggested_skill=suggested.name if suggested else None,
    )


def _render(result: ChainResult, *, as_json: bool) -> str:
    usage = result.usage.to_dict()
    if as_json:
        payload: dict[str, Any] = {
            "response": result.response,
            "usage": usage,
            "steps": [
                {
                    "prompt": step.prompt,
                    "next_step": step.next_step,
                    "iterations": step.result.iterations,
                    "degraded": step.result.degraded,
                }
                for step in result.steps
            ],
        }
        return json.dumps(payload, ensure_ascii=False, indent=2)
    return (
        f"{result.response}\n\n"
        f"[steps={len(result.steps)} prompt={usage['prompt_tokens']} "
        f"completion={usage['completion_tokens']} total={usage['total_tokens']}]"
    )


async def _run(args: argparse.Namespace, settings: Settings) -> ChainResult:
    catalog = _load_catalog(args.skills)
    dispatcher = RegistryToolDispatcher()
    if catalog is not None:
        register_skill_tool(dispatcher, catalog)

    state = ConversationState(_system_prompt(args, settings, catalog))
    client = AIClient(settings.client_settings())
    driver = SkillChainDriver.create(
        client,
        dispatcher,
        state,
        config=settings.loop_config(),
        retry_policy=settings.retry_policy(),
        event_logger=EventLogger(enabled=settings.debug_event_logging),
        max_follow_ups=settings.max_follow_ups,
        catalog=catalog,
    )
    try:
        return await driver.run(args.prompt)
    finally:
        await client.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    overrides = {
        "model": args.model,
        "wire_api": args.wire_api,
        "max_follow_ups": args.max_follow_ups,
        "require_envelope": False if args.free_form else None,
        "debug_logging": True if args.debug else None,
    }
    settings = SettingsStore(args.settings).load(overrides=overrides)
    logging_utils.setup_logging(logging_utils.resolve_level(debug=settings.debug_logging), secrets=[settings.api_key])

    if not settings.api_key:
        print("No API key configured; set INKWELL_API_KEY or save one in settings.", file=sys.stderr)
        return 2

    result = asyncio.run(_run(args, settings))
    print(_render(result, as_json=args.json))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
