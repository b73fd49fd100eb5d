#!/usr/bin/env python3
"""
Role Catalog - the fixed workflow templates of the Garage.

Each template is an ordered sequence of five roles (A..E). Templates are
immutable and shared by every workflow run.
"""

from dataclasses import dataclass
from typing import Dict, List, Tuple

from input_validation import ValidationError


@dataclass(frozen=True)
class Role:
    role_id: str
    name: str
    description: str


@dataclass(frozen=True)
class WorkflowTemplate:
    template_id: str
    title: str
    icon: str
    description: str
    roles: Tuple[Role, ...]

    @property
    def role_ids(self) -> List[str]:
        return [role.role_id for role in self.roles]

    def get_role(self, role_id: str) -> Role:
        for role in self.roles:
            if role.role_id == role_id:
                return role
        raise ValidationError(
            f"Unknown role '{role_id}' for template '{self.template_id}'"
        )


def _roles(*definitions: Tuple[str, str]) -> Tuple[Role, ...]:
    # Role ids follow position: A, B, C, ...
    return tuple(
        Role(chr(ord("A") + index), name, description)
        for index, (name, description) in enumerate(definitions)
    )


TEMPLATES: Dict[str, WorkflowTemplate] = {
    "build": WorkflowTemplate(
        "build",
        "Create/Build App",
        "🏗️",
        "Collaborative development with specialized AI roles.",
        _roles(
            ("Prompt Refiner", "Refines user requirements and creates detailed specifications"),
            ("Backend Developer", "Creates backend code, APIs, and database structure"),
            ("Frontend Designer", "Builds UI/UX and frontend components"),
            ("Code Reviewer", "Reviews, optimizes, and fixes code issues"),
            ("Documentation Specialist", "Creates documentation and explanations"),
        ),
    ),
    "research": WorkflowTemplate(
        "research",
        "Research & Analysis",
        "🔍",
        "Comprehensive research with data collection and analysis.",
        _roles(
            ("Research Coordinator", "Defines research scope and methodology"),
            ("Data Collector", "Gathers information from multiple sources"),
            ("Research Analyst", "Analyzes and synthesizes findings"),
            ("Fact Checker", "Verifies accuracy and credibility"),
            ("Report Writer", "Creates final comprehensive report"),
        ),
    ),
    "math": WorkflowTemplate(
        "math",
        "Solve Math Problem",
        "🧮",
        "Complex problem solving with step-by-step verification.",
        _roles(
            ("Problem Interpreter", "Understands and structures mathematical problems"),
            ("Solution Strategist", "Develops solution approaches and methods"),
            ("Calculator", "Performs calculations and computations"),
            ("Verification Specialist", "Checks accuracy and alternative methods"),
            ("Explainer", "Provides clear step-by-step explanations"),
        ),
    ),
    "ideas": WorkflowTemplate(
        "ideas",
        "Creative Ideation",
        "💡",
        "Brainstorming new concepts with feasibility analysis.",
        _roles(
            ("Idea Coordinator", "Structures and clarifies creative concepts"),
            ("Creative Generator", "Brainstorms and expands ideas"),
            ("Feasibility Analyst", "Evaluates practicality and market potential"),
            ("Idea Refiner", "Polishes and improves concepts"),
            ("Implementation Planner", "Creates actionable next steps"),
        ),
    ),
}


def get_template(template_id: str) -> WorkflowTemplate:
    template = TEMPLATES.get(template_id)
    if template is None:
        raise ValidationError(
            f"Unknown workflow template '{template_id}'. Choose one of: {', '.join(TEMPLATES)}"
        )
    return template


def list_templates() -> List[WorkflowTemplate]:
    return list(TEMPLATES.values())
