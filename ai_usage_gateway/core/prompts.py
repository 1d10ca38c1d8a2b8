"""
Prompt templates.

Templates use {{name}} placeholders and optional {{#if name}}...{{/if}}
sections. A section is kept only when its variable has a non-empty value.
Built-in templates are the fallback when no active stored template exists.
"""

import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, List, Mapping, Optional, Tuple

from .pricing import FAST_MODEL, PRIMARY_MODEL

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")
_SECTION = re.compile(r"\{\{#if (\w+)\}\}(.*?)\{\{/if\}\}\n?", re.DOTALL)

DEFAULT_CATEGORY = "writing-assistance"


@dataclass(frozen=True)
class PromptTemplate:
    """System and user prompts plus the generation parameters they run with."""
    name: str
    system_prompt: str
    user_prompt: str
    model_id: str
    temperature: float
    max_tokens: int
    variables: Tuple[str, ...] = ()
    description: Optional[str] = None
    category: str = DEFAULT_CATEGORY


@dataclass(frozen=True)
class VariableCheck:
    """Result of validate_variables."""
    valid: bool
    missing: List[str] = field(default_factory=list)


def _is_provided(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, tuple)) and len(value) == 0:
        return False
    return True


def _format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """Fill a template from variables.

    Lists are joined with ", ". A placeholder with no value is left in
    place and logged as a warning.

    Args:
        template: Template text
        variables: Values by placeholder name

    Returns:
        Rendered text
    """
    def _section(match: "re.Match[str]") -> str:
        return match.group(2) if _is_provided(variables.get(match.group(1))) else ""

    def _placeholder(match: "re.Match[str]") -> str:
        name = match.group(1)
        value = variables.get(name)
        if value is None:
            logger.warning("Template variable '%s' not provided", name)
            return match.group(0)
        return _format_value(value)

    return _PLACEHOLDER.sub(_placeholder, _SECTION.sub(_section, template))


def extract_variables(template: str) -> List[str]:
    """Placeholder names in order of first appearance, without duplicates."""
    names: List[str] = []
    for match in _PLACEHOLDER.finditer(template):
        if match.group(1) not in names:
            names.append(match.group(1))
    return names


def validate_variables(template: str, variables: Mapping[str, Any]) -> VariableCheck:
    """Check that every placeholder in template has a value."""
    missing = [name for name in extract_variables(template) if variables.get(name) is None]
    return VariableCheck(valid=not missing, missing=missing)


BUILTIN_TEMPLATES: Mapping[str, PromptTemplate] = MappingProxyType({
    "shoutout-generator": PromptTemplate(
        name="shoutout-generator",
        system_prompt=(
            "You are a recognition message enhancer for a CliftonStrengths-based team collaboration app.\n"
            "Help users write recognition messages (shoutouts) that connect to specific strengths "
            "themes when relevant, are genuine and specific, highlight the impact of the contribution "
            "and keep the original intent.\n"
            "Keep responses to 2-3 sentences. Never invent facts not present in the original message."
        ),
        user_prompt=(
            "Please enhance this recognition message for {{recipientName}}:\n\n"
            "Original message: \"{{originalMessage}}\"\n\n"
            "{{#if recipientStrengths}}Recipient's top strengths: {{recipientStrengths}}\n{{/if}}"
            "{{#if context}}Additional context: {{context}}\n{{/if}}"
            "\nProvide an enhanced version that is more impactful while staying true to the original intent."
        ),
        model_id=FAST_MODEL,
        temperature=0.8,
        max_tokens=500,
        variables=("recipientName", "originalMessage", "recipientStrengths", "context"),
    ),
    "coaching-tips": PromptTemplate(
        name="coaching-tips",
        system_prompt=(
            "You are a CliftonStrengths coach providing personalized development tips.\n"
            "Focus on leveraging strengths rather than fixing weaknesses, and keep tips practical "
            "and immediately actionable."
        ),
        user_prompt=(
            "Provide 3-5 coaching tips for {{userName}} based on their strengths profile.\n\n"
            "Top strengths: {{topStrengths}}\n"
            "{{#if dominantDomain}}Dominant domain: {{dominantDomain}}\n{{/if}}"
            "{{#if focusArea}}Focus area: {{focusArea}}\n{{/if}}"
            "\nFormat as a bulleted list with brief explanations."
        ),
        model_id=PRIMARY_MODEL,
        temperature=0.7,
        max_tokens=800,
        variables=("userName", "topStrengths", "dominantDomain", "focusArea"),
    ),
    "review-assistant": PromptTemplate(
        name="review-assistant",
        system_prompt=(
            "You are a performance review writing assistant that incorporates CliftonStrengths insights.\n"
            "Help managers write constructive, strengths-based feedback with specific examples, "
            "development opportunities and clear goals."
        ),
        user_prompt=(
            "Help write a performance review section for {{employeeName}}.\n\n"
            "Their top strengths: {{topStrengths}}\n"
            "Recent accomplishments: {{accomplishments}}\n"
            "Areas for development: {{developmentAreas}}\n"
            "{{#if context}}Additional context: {{context}}\n{{/if}}"
            "\nWrite a balanced, strengths-based review paragraph."
        ),
        model_id=PRIMARY_MODEL,
        temperature=0.6,
        max_tokens=1000,
        variables=("employeeName", "topStrengths", "accomplishments", "developmentAreas", "context"),
    ),
    "goal-suggester": PromptTemplate(
        name="goal-suggester",
        system_prompt=(
            "You are a development goal generator using the CliftonStrengths framework.\n"
            "Create SMART goals that leverage the person's top strengths and are achievable "
            "within a review period."
        ),
        user_prompt=(
            "Suggest 3 development goals for {{employeeName}}.\n\n"
            "Their top strengths: {{topStrengths}}\n"
            "Role: {{role}}\n"
            "{{#if teamContext}}Team context: {{teamContext}}\n{{/if}}"
            "{{#if focusAreas}}Focus areas: {{focusAreas}}\n{{/if}}"
            "\nFormat each goal with a title, a description, how it leverages their strengths "
            "and a suggested timeline."
        ),
        model_id=PRIMARY_MODEL,
        temperature=0.7,
        max_tokens=1000,
        variables=("employeeName", "topStrengths", "role", "teamContext", "focusAreas"),
    ),
    "partnership-insights": PromptTemplate(
        name="partnership-insights",
        system_prompt=(
            "You are a team dynamics expert specializing in CliftonStrengths partnerships.\n"
            "Analyze how two people's strengths complement each other and where blind spots may appear."
        ),
        user_prompt=(
            "Analyze the partnership potential between {{person1Name}} and {{person2Name}}.\n\n"
            "{{person1Name}}'s top strengths: {{person1Strengths}}\n"
            "{{person2Name}}'s top strengths: {{person2Strengths}}\n"
            "{{#if projectContext}}Project context: {{projectContext}}\n{{/if}}"
            "\nProvide key synergies, potential challenges and collaboration tips."
        ),
        model_id=PRIMARY_MODEL,
        temperature=0.7,
        max_tokens=800,
        variables=("person1Name", "person1Strengths", "person2Name", "person2Strengths", "projectContext"),
    ),
    "team-narrative": PromptTemplate(
        name="team-narrative",
        system_prompt=(
            "You are a team dynamics storyteller who turns CliftonStrengths data into narratives.\n"
            "Be positive but honest about potential challenges."
        ),
        user_prompt=(
            "Write a narrative summary of this team's strengths composition.\n\n"
            "Team: {{teamName}} ({{memberCount}} members)\n\n"
            "Domain distribution:\n{{domainDistribution}}\n\n"
            "Top themes:\n{{topThemes}}\n"
            "{{#if gaps}}\nGaps identified:\n{{gaps}}\n{{/if}}"
            "\nWrite a 2-3 paragraph narrative describing the team's collective identity, its "
            "unique strengths and areas for growth."
        ),
        model_id=PRIMARY_MODEL,
        temperature=0.7,
        max_tokens=1500,
        variables=("teamName", "memberCount", "domainDistribution", "topThemes", "gaps"),
    ),
    "bio-generator": PromptTemplate(
        name="bio-generator",
        system_prompt=(
            "You are a professional bio writer who incorporates CliftonStrengths into personal narratives.\n"
            "Write bios that are authentic, strengths-focused without jargon, and concise."
        ),
        user_prompt=(
            "Write a {{style}} bio for {{userName}}.\n\n"
            "Top strengths: {{topStrengths}}\n"
            "{{#if jobTitle}}Role: {{jobTitle}}\n{{/if}}"
            "{{#if department}}Department: {{department}}\n{{/if}}"
            "{{#if interests}}Interests: {{interests}}\n{{/if}}"
            "\nKeep it to 2-3 sentences."
        ),
        model_id=FAST_MODEL,
        temperature=0.8,
        max_tokens=300,
        variables=("style", "userName", "topStrengths", "jobTitle", "department", "interests"),
    ),
})
