#!/usr/bin/env python3
"""
Garage Workflow - sequential multi-stage orchestration.

A workflow run owns one Stage per role of its template. Stage 0 refines the
user's request and then waits for the user to approve or extend it; every
later stage receives the full output of the stage before it and hands its own
output on to the next one automatically.

Every start() and reset() bumps a generation counter. A provider call
remembers the generation it was issued under, and its result is dropped if
the run has been reset or restarted in the meantime.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

import provider_adapter
from credential_store import CredentialStore
from input_validation import (
    AssignmentError,
    CredentialMissingError,
    ProviderError,
    ValidationError,
    validate_prompt,
)
from notifications import ConsoleNotifier, Notifier
from provider_adapter import ProviderResponse
from role_catalog import Role, WorkflowTemplate

DEFAULT_STEP_DELAY = float(os.getenv("BUNNY_STEP_DELAY", "1.0"))  # seconds
MIN_ASSIGNED_ROLES = 2
REFINEMENT_LABEL = "Additional requirements:"


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    AWAITING_USER_DECISION = "awaiting_user_decision"


@dataclass
class Stage:
    role_id: str
    role_name: str
    provider_id: Optional[str] = None
    prompt: str = ""
    output: Optional[str] = None
    error: Optional[str] = None
    status: StageStatus = StageStatus.PENDING


InvokeFn = Callable[..., Awaitable[ProviderResponse]]
Listener = Callable[["GarageWorkflow"], None]


def render_stage_prompt(role: Role, template: WorkflowTemplate, user_input: str) -> str:
    """Prompt for the first stage: restructure the user's request into objectives."""
    return (
        f"You are a {role.name}. Your role: {role.description}. "
        f"The overall goal is to {template.title}. "
        f'User Request: "{user_input}". '
        "Please refine and structure this request into clear objectives for the team."
    )


def render_handoff_prompt(previous: Stage, output: str, next_role: Role) -> str:
    """Prompt for a later stage. The previous output is forwarded verbatim."""
    return (
        f"You are a {next_role.name}. Your role: {next_role.description}. "
        f"The previous step was completed by {previous.role_name}, "
        f'who provided the following: "{output}". '
        "Based on this, please perform your task."
    )


class GarageWorkflow:
    """State machine for one workflow run over a template's roles."""

    def __init__(
        self,
        template: WorkflowTemplate,
        credentials: CredentialStore,
        notifier: Optional[Notifier] = None,
        invoke: Optional[InvokeFn] = None,
        step_delay: float = DEFAULT_STEP_DELAY,
    ):
        self.template = template
        self.credentials = credentials
        self.notifier = notifier or ConsoleNotifier()
        self.invoke = invoke or provider_adapter.invoke
        self.step_delay = step_delay
        self.role_assignments: Dict[str, str] = {}
        self.stages: List[Stage] = self._fresh_stages()
        self.current_index = 0
        self.started = False
        self.generation = 0
        self._listeners: List[Listener] = []

    def _fresh_stages(self) -> List[Stage]:
        return [Stage(role.role_id, role.name) for role in self.template.roles]

    # --- Derived state ---

    @property
    def awaiting_user_decision(self) -> bool:
        return bool(self.stages) and (
            self.stages[0].status is StageStatus.AWAITING_USER_DECISION
        )

    @property
    def is_complete(self) -> bool:
        return self.started and all(
            stage.status is StageStatus.COMPLETED for stage in self.stages
        )

    @property
    def processing_stage(self) -> Optional[Stage]:
        for stage in self.stages:
            if stage.status is StageStatus.PROCESSING:
                return stage
        return None

    @property
    def assigned_roles(self) -> List[str]:
        return [r for r in self.template.role_ids if self.role_assignments.get(r)]

    # --- Observers ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call listener(workflow) after every state change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    # --- Operations ---

    def assign_role(self, role_id: str, provider_id: Optional[str]) -> None:
        """Bind a provider to a role. An empty provider id removes the binding."""
        if self.started:
            raise ValidationError("Role assignments cannot change while the workflow runs")
        self.template.get_role(role_id)

        if not provider_id:
            self.role_assignments.pop(role_id, None)
        elif provider_id not in provider_adapter.PROVIDERS:
            raise ValidationError(f"Unknown provider '{provider_id}'")
        else:
            self.role_assignments[role_id] = provider_id
        self._emit()

    async def start(self, initial_prompt: str) -> Optional[Stage]:
        """Validate the setup and run the first stage with the user's prompt."""
        if self.started:
            raise ValidationError("Workflow already started. Reset it first.")
        if len(self.assigned_roles) < MIN_ASSIGNED_ROLES:
            raise ValidationError(
                f"Please assign at least {MIN_ASSIGNED_ROLES} AIs to roles "
                f"(assigned: {len(self.assigned_roles)})"
            )
        validate_prompt(initial_prompt, field="Task description")

        self.generation += 1
        self.started = True
        for stage in self.stages:
            stage.provider_id = self.role_assignments.get(stage.role_id)
        logging.info(
            f"Starting '{self.template.template_id}' workflow (generation {self.generation}) "
            f"with roles {', '.join(self.assigned_roles)}"
        )
        self._emit()
        return await self.run_stage(0, initial_prompt)

    async def run_stage(self, index: int, input_prompt: str) -> Optional[Stage]:
        """
        Run one stage and, for stages after the first, continue down the chain.

        Returns:
            The stage on success; None if the call failed, the credential was
            missing, or the result arrived after a reset

        Raises:
            AssignmentError: If there is no stage at index or it has no provider
            ValidationError: If another stage is still processing
        """
        if not 0 <= index < len(self.stages):
            raise AssignmentError(f"No stage at position {index}")
        stage = self.stages[index]
        if not stage.provider_id:
            raise AssignmentError(
                f"No AI assigned to role {stage.role_id} ({stage.role_name})",
                role_id=stage.role_id,
            )
        busy = self.processing_stage
        if busy is not None:
            raise ValidationError(f"{busy.role_name} is still processing")

        connection = self.credentials.get(stage.provider_id)
        if connection is None or not connection.api_key:
            # Stage stays pending but keeps its prompt so retry() can resume it
            error = CredentialMissingError(stage.provider_id)
            stage.prompt = input_prompt
            stage.error = str(error)
            self.current_index = index
            self._emit()
            self.notifier.error(f"Error in {stage.role_name}: {error}")
            return None

        generation = self.generation
        stage.status = StageStatus.PROCESSING
        stage.prompt = input_prompt
        stage.error = None
        self.current_index = index
        # Starting any later stage passes the approval gate
        if index > 0 and self.stages[0].status is StageStatus.AWAITING_USER_DECISION:
            self.stages[0].status = StageStatus.COMPLETED
        self._emit()

        if index == 0:
            rendered = render_stage_prompt(self.template.roles[0], self.template, input_prompt)
        else:
            rendered = input_prompt

        logging.info(f"[{stage.role_id}] {stage.role_name} -> {stage.provider_id}")
        try:
            response = await self.invoke(
                stage.provider_id, rendered, connection.api_key, connection.model
            )
        except (ProviderError, CredentialMissingError) as e:
            return self._fail_stage(stage, generation, e)
        except Exception as e:
            logging.exception(f"[{stage.role_id}] unexpected failure in {stage.role_name}")
            return self._fail_stage(stage, generation, e)

        if generation != self.generation:
            logging.info(
                f"Discarding result for {stage.role_name} from generation {generation} "
                f"(current: {self.generation})"
            )
            return None

        stage.output = response.content
        if index == 0:
            stage.status = StageStatus.AWAITING_USER_DECISION
        else:
            stage.status = StageStatus.COMPLETED
        self._emit()
        logging.info(f"[{stage.role_id}] {stage.role_name} finished ({stage.status.value})")

        if stage.status is StageStatus.COMPLETED:
            if index == len(self.stages) - 1:
                self.notifier.success("Workflow completed successfully!")
            else:
                await self._auto_advance(index, generation)
        return stage

    def _fail_stage(self, stage: Stage, generation: int, error: Exception) -> None:
        if generation != self.generation:
            logging.info(f"Ignoring failure from a reset run: {stage.role_name}")
            return None
        stage.status = StageStatus.PENDING
        stage.error = str(error) or type(error).__name__
        self._emit()
        self.notifier.error(f"Error in {stage.role_name} ({stage.provider_id}): {stage.error}")
        return None

    async def _auto_advance(self, index: int, generation: int) -> None:
        if self.step_delay > 0:
            await asyncio.sleep(self.step_delay)
        if generation != self.generation:
            return
        previous = self.stages[index]
        next_prompt = render_handoff_prompt(
            previous, previous.output or "", self.template.roles[index + 1]
        )
        try:
            await self.run_stage(index + 1, next_prompt)
        except AssignmentError as e:
            self.notifier.error(str(e))

    async def submit_refinement(self, extra_text: str) -> Optional[Stage]:
        """Extend the first stage's request and run it again from scratch."""
        if not self.awaiting_user_decision:
            raise ValidationError("Refinement is only possible while the first stage awaits a decision")
        extra_text = validate_prompt(extra_text, field="Additional requirements")
        combined = f"{self.stages[0].prompt}\n\n{REFINEMENT_LABEL} {extra_text}"
        return await self.run_stage(0, combined)

    async def advance(self) -> Optional[Stage]:
        """Accept the first stage's output and hand it to the next role."""
        if not self.awaiting_user_decision:
            raise ValidationError("Nothing is awaiting approval")
        if len(self.stages) < 2:
            raise ValidationError("There is no next role to pass to")
        first = self.stages[0]
        next_prompt = render_handoff_prompt(
            first, first.output or "", self.template.roles[1]
        )
        return await self.run_stage(1, next_prompt)

    async def retry(self) -> Optional[Stage]:
        """Run the current stage again with the prompt it last received."""
        stage = self.stages[self.current_index]
        if not self.started or stage.status is not StageStatus.PENDING or not stage.prompt:
            raise ValidationError("There is no failed stage to retry")
        return await self.run_stage(self.current_index, stage.prompt)

    def reset(self) -> None:
        """Forget the run: pending stages, no assignments, not started."""
        self.generation += 1
        self.role_assignments = {}
        self.stages = self._fresh_stages()
        self.current_index = 0
        self.started = False
        logging.debug(f"Workflow reset (generation {self.generation})")
        self._emit()
