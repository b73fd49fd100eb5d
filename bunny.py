#!/usr/bin/env python3
"""
BUNNY Garage - compare LLM providers side by side, or chain them as a team.

Compare mode sends one prompt to every selected provider concurrently.
Garage mode runs a role-based workflow (see garage_workflow.py) with an
approval gate after the first role.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import provider_adapter
from credential_store import Connection, ConnectionStore
from garage_workflow import DEFAULT_STEP_DELAY, GarageWorkflow, StageStatus
from input_validation import (
    BunnyError,
    CredentialMissingError,
    ProviderError,
    ValidationError,
    sanitize_ai_response,
)
from notifications import (
    ANSI_BOLD,
    ANSI_CYAN,
    ANSI_GREEN,
    ANSI_RED,
    ANSI_RESET,
    ANSI_YELLOW,
    ConsoleNotifier,
    Notifier,
)
from provider_adapter import PROVIDERS, ImageInput, ProviderResponse
from role_catalog import get_template, list_templates


def display_name(provider_id: str) -> str:
    client = PROVIDERS.get(provider_id)
    return client.display_name if client else provider_id


# --- Orchestrator Logic ---


class Orchestrator:
    """Compare mode and connection management on top of a ConnectionStore."""

    def __init__(
        self,
        store: ConnectionStore,
        notifier: Optional[Notifier] = None,
        invoke: Optional[Callable] = None,
        tester: Optional[Callable] = None,
        record_history: bool = True,
    ):
        self.store = store
        self.notifier = notifier or ConsoleNotifier()
        self.invoke = invoke or provider_adapter.invoke
        self.tester = tester or provider_adapter.test_connection
        self.record_history = record_history

    async def connect(
        self, provider_id: str, api_key: str, model: Optional[str] = None
    ) -> bool:
        """Verify a key with one test call and store the outcome."""
        if provider_id not in PROVIDERS:
            raise ValidationError(f"Unknown provider '{provider_id}'")
        if not api_key or not api_key.strip():
            raise ValidationError("API key must not be empty")
        api_key = api_key.strip()

        self.store.set_connection(Connection(provider_id, "connecting", model=model))
        ok = await self.tester(provider_id, api_key, model)
        if ok:
            self.store.set_connection(Connection(provider_id, "connected", api_key, model))
            self.notifier.success(f"{display_name(provider_id)} connected successfully!")
        else:
            self.store.set_connection(Connection(provider_id, "error", model=model))
            self.notifier.error(
                f"Failed to connect to {display_name(provider_id)}. Please check your API key."
            )
        return ok

    def disconnect(self, provider_id: str) -> None:
        if self.store.remove_connection(provider_id):
            self.notifier.info(f"{display_name(provider_id)} disconnected")
        else:
            self.notifier.info(f"{display_name(provider_id)} was not connected")

    async def run_parallel(
        self,
        prompt: str,
        provider_ids: Optional[List[str]] = None,
        image: Optional[ImageInput] = None,
    ) -> Dict[str, ProviderResponse]:
        """
        Ask every selected provider at once and wait for all of them to settle.

        Each provider gets its own result cell; a failure is recorded in that
        cell's error field and never affects the other calls.
        """
        if provider_ids is None:
            provider_ids = self.store.connected_providers()
        provider_ids = list(dict.fromkeys(provider_ids))
        if not provider_ids:
            raise ValidationError("Please select at least one AI service to prompt!")
        if not (prompt or "").strip() and image is None:
            raise ValidationError("Prompt must be a non-empty string")
        for provider_id in provider_ids:
            if provider_id not in PROVIDERS:
                raise ValidationError(f"Unknown provider '{provider_id}'")
            connection = self.store.get(provider_id)
            if connection is None or connection.status != "connected":
                raise ValidationError(f"{display_name(provider_id)} is not connected.")

        logging.info(
            f"Orchestrator starting parallel run for: {', '.join(provider_ids)}"
        )
        results = await asyncio.gather(
            *(self._ask(provider_id, prompt, image) for provider_id in provider_ids),
            return_exceptions=True,
        )

        cells: Dict[str, ProviderResponse] = {}
        for provider_id, result in zip(provider_ids, results):
            if isinstance(result, BaseException):
                logging.exception(
                    f"[{provider_id}] unexpected failure", exc_info=result
                )
                self.notifier.error(f"{display_name(provider_id)}: {result}")
                result = ProviderResponse(provider_id, "", error=str(result) or type(result).__name__)
            cells[provider_id] = result
            if self.record_history:
                self.store.record_response(prompt, result)
        return cells

    async def _ask(
        self, provider_id: str, prompt: str, image: Optional[ImageInput]
    ) -> ProviderResponse:
        connection = self.store.get(provider_id)
        try:
            if connection is None or not connection.api_key:
                raise CredentialMissingError(provider_id)
            return await self.invoke(
                provider_id, prompt, connection.api_key, connection.model, image
            )
        except (ProviderError, CredentialMissingError) as e:
            self.notifier.error(f"{display_name(provider_id)}: {e}")
            return ProviderResponse(provider_id, "", error=str(e))


# --- UI Helpers ---


def print_header(text: str):
    print(f"\n{ANSI_BOLD}{ANSI_CYAN}=== {text} ==={ANSI_RESET}")


def print_result(response: ProviderResponse):
    tokens = f", {response.tokens} tokens" if response.tokens is not None else ""
    print(
        f"\n{ANSI_BOLD}--- Response from {display_name(response.provider_name).upper()} "
        f"({response.duration:.2f}s{tokens}) ---{ANSI_RESET}"
    )
    if response.error:
        print(f"{ANSI_RED}Error: {response.error}{ANSI_RESET}")
    else:
        print(sanitize_ai_response(response.content))


def stage_printer() -> Callable[[GarageWorkflow], None]:
    """Build a workflow listener that prints each stage status change once."""
    last_seen: Dict[Tuple[int, str], str] = {}
    icons = {
        StageStatus.PENDING: "...",
        StageStatus.PROCESSING: "⏳",
        StageStatus.COMPLETED: "✅",
        StageStatus.AWAITING_USER_DECISION: "✋",
    }

    def listener(workflow: GarageWorkflow) -> None:
        for stage in workflow.stages:
            key = (workflow.generation, stage.role_id)
            if last_seen.get(key) == stage.status.value:
                continue
            last_seen[key] = stage.status.value
            if stage.status is StageStatus.PENDING and not stage.error:
                continue
            provider = display_name(stage.provider_id) if stage.provider_id else "unassigned"
            print(
                f"{ANSI_CYAN}{icons[stage.status]} Role {stage.role_id} "
                f"{stage.role_name} [{provider}]: {stage.status.value}{ANSI_RESET}"
            )

    return listener


# --- Main Modes ---


async def mode_compare(
    orchestrator: Orchestrator,
    prompt: str,
    provider_ids: Optional[List[str]] = None,
    image_path: Optional[str] = None,
) -> int:
    image = ImageInput.from_path(Path(image_path)) if image_path else None
    selected = provider_ids or orchestrator.store.connected_providers()
    print_header(f"🚀 Comparing {len(selected)} providers")

    results = await orchestrator.run_parallel(prompt, provider_ids, image)
    for response in results.values():
        print_result(response)

    failed = sum(1 for r in results.values() if r.error)
    color = ANSI_GREEN if not failed else ANSI_YELLOW
    print(
        f"\n{color}{len(results) - failed} succeeded, {failed} failed{ANSI_RESET}\n"
    )
    return 0 if failed < len(results) else 1


async def mode_garage(
    store: ConnectionStore,
    template_id: str,
    prompt: str,
    assignments: List[Tuple[str, str]],
    step_delay: float = DEFAULT_STEP_DELAY,
    notifier: Optional[Notifier] = None,
    read_input: Callable[[str], str] = input,
) -> int:
    template = get_template(template_id)
    notifier = notifier or ConsoleNotifier()
    workflow = GarageWorkflow(template, store, notifier, step_delay=step_delay)
    workflow.subscribe(stage_printer())

    for role_id, provider_id in assignments:
        workflow.assign_role(role_id, provider_id)

    print_header(f"{template.icon} {template.title}")
    for role in template.roles:
        provider = workflow.role_assignments.get(role.role_id)
        print(f"  • Role {role.role_id} {role.name}: {display_name(provider) if provider else '-'}")

    await workflow.start(prompt)

    while True:
        if workflow.awaiting_user_decision:
            first = workflow.stages[0]
            print(f"\n{ANSI_BOLD}--- {first.role_name} ---{ANSI_RESET}")
            print(sanitize_ai_response(first.output or ""))
            choice = read_input("\n[r]efine & rerun, [a]dvance to next role, [q]uit > ").strip().lower()
            try:
                if choice.startswith("r"):
                    extra = read_input("Additional requirements > ")
                    await workflow.submit_refinement(extra)
                elif choice.startswith("a"):
                    await workflow.advance()
                elif choice.startswith("q"):
                    break
            except BunnyError as e:
                notifier.error(str(e))
                if not isinstance(e, ValidationError):
                    break
        elif workflow.started and not workflow.is_complete and workflow.stages[workflow.current_index].error:
            choice = read_input("\n[r]etry the failed role, [q]uit > ").strip().lower()
            if not choice.startswith("r"):
                break
            await workflow.retry()
        else:
            break

    print_header("🎉 WORKFLOW RESULTS")
    for stage in workflow.stages:
        if stage.output and stage.status is not StageStatus.PENDING:
            print(f"\n{ANSI_BOLD}--- Role {stage.role_id}: {stage.role_name} ---{ANSI_RESET}")
            print(sanitize_ai_response(stage.output))
    return 0 if workflow.is_complete else 1


def show_providers(store: ConnectionStore) -> int:
    print_header("Providers")
    for provider_id, client in PROVIDERS.items():
        connection = store.get(provider_id)
        status = connection.status if connection else "disconnected"
        model = (connection.model if connection else None) or client.default_model
        color = ANSI_GREEN if status == "connected" else ANSI_YELLOW
        print(
            f"  {provider_id:<10} {client.display_name:<8} {color}{status:<12}{ANSI_RESET} "
            f"model={model}  {client.description}"
        )
    return 0


def show_templates() -> int:
    for template in list_templates():
        print_header(f"{template.icon} {template.template_id}: {template.title}")
        print(f"  {template.description}")
        for role in template.roles:
            print(f"  {role.role_id}: {role.name} - {role.description}")
    return 0


def parse_assignment(value: str) -> Tuple[str, str]:
    """Parse ROLE=PROVIDER, e.g. A=openai."""
    role_id, sep, provider_id = value.partition("=")
    if not sep or not role_id.strip() or not provider_id.strip():
        raise argparse.ArgumentTypeError(f"expected ROLE=PROVIDER, got '{value}'")
    return role_id.strip().upper(), provider_id.strip().lower()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bunny", description="BUNNY Garage - multi-provider AI comparison and workflows"
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--data-dir", help="Directory for stored connections and history", default=None
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("providers", help="List providers and their connection status")
    sub.add_parser("templates", help="List Garage workflow templates")

    connect = sub.add_parser("connect", help="Test and store an API key")
    connect.add_argument("provider", choices=sorted(PROVIDERS))
    connect.add_argument("--api-key", required=True)
    connect.add_argument("--model", default=None)

    disconnect = sub.add_parser("disconnect", help="Forget a provider's API key")
    disconnect.add_argument("provider", choices=sorted(PROVIDERS))

    compare = sub.add_parser("compare", help="Send one prompt to several providers")
    compare.add_argument("prompt")
    compare.add_argument(
        "--providers", nargs="+", default=None, help="Provider ids (default: all connected)"
    )
    compare.add_argument("--image", default=None, help="Image file for multimodal providers")

    garage = sub.add_parser("garage", help="Run a role-based Garage workflow")
    garage.add_argument("template")
    garage.add_argument("prompt")
    garage.add_argument(
        "--assign",
        action="append",
        type=parse_assignment,
        default=[],
        metavar="ROLE=PROVIDER",
        help="Bind a provider to a role, e.g. --assign A=openai (repeatable)",
    )
    garage.add_argument(
        "--step-delay",
        type=float,
        default=DEFAULT_STEP_DELAY,
        help="Pause in seconds between automatic stages",
    )

    sub.add_parser("clear-history", help="Delete stored compare-mode responses")
    sub.add_parser("reset-all", help="Delete all stored connections and history")
    return parser


async def main_async(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    store = ConnectionStore(Path(args.data_dir) if args.data_dir else None)
    orchestrator = Orchestrator(store)

    try:
        if args.command == "providers":
            return show_providers(store)
        if args.command == "templates":
            return show_templates()
        if args.command == "connect":
            ok = await orchestrator.connect(args.provider, args.api_key, args.model)
            return 0 if ok else 1
        if args.command == "disconnect":
            orchestrator.disconnect(args.provider)
            return 0
        if args.command == "compare":
            return await mode_compare(orchestrator, args.prompt, args.providers, args.image)
        if args.command == "garage":
            return await mode_garage(
                store, args.template, args.prompt, args.assign, args.step_delay
            )
        if args.command == "clear-history":
            store.clear_history()
            orchestrator.notifier.success("Response history cleared!")
            return 0
        if args.command == "reset-all":
            store.reset_all()
            orchestrator.notifier.success("All settings have been reset.")
            return 0
    except (BunnyError, OSError) as e:
        print(f"{ANSI_RED}Error: {e}{ANSI_RESET}")
        return 1
    return 1


def main():
    try:
        sys.exit(asyncio.run(main_async()))
    except KeyboardInterrupt:
        print("\nOperation cancelled by user.")
        sys.exit(130)


if __name__ == "__main__":
    main()
