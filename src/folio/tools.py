import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .portfolio import PortfolioConfig

logger = logging.getLogger(__name__)

EMPTY_PARAMETERS: dict[str, Any] = {"type": "object", "properties": {}}


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    execute: Callable[..., str | Awaitable[str]]
    parameters: dict[str, Any] = field(default_factory=lambda: dict(EMPTY_PARAMETERS))

    def definition(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolSet:
    def __init__(self, tools: Iterable[ToolSpec] = ()) -> None:
        self._tools: dict[str, ToolSpec] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"duplicate tool name: {tool.name}")
            self._tools[tool.name] = tool

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any] | None = None) -> str:
        tool = self._tools.get(name)
        if tool is None:
            logger.warning("unknown tool requested name=%s", name)
            return f"Error: unknown tool '{name}'"
        try:
            result = tool.execute(**(arguments or {}))
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.warning("tool failed name=%s detail=%s", name, exc)
            return f"Error: tool '{name}' failed: {exc}"
        if isinstance(result, str):
            return result
        return json.dumps(result)


def _projects_text(config: PortfolioConfig) -> str:
    if not config.projects:
        return "No projects listed yet."
    lines = []
    for project in config.projects:
        line = f"**{project.title}**: {project.description}"
        if project.tech_stack:
            line += f" ({', '.join(project.tech_stack)})"
        links = [url for url in (project.demo_url, project.repo_url) if url]
        if links:
            line += " - " + " | ".join(links)
        lines.append(f"- {line}")
    return "\n".join(lines)


def _skills_text(config: PortfolioConfig) -> str:
    if not config.skills:
        return "No skills listed yet."
    return "\n".join(
        f"- **{category.replace('_', ' ').title()}**: {', '.join(items)}"
        for category, items in config.skills.items()
    )


def _contact_text(config: PortfolioConfig) -> str:
    contact = config.contact
    lines = []
    if contact.email:
        lines.append(f"- Email: {contact.email}")
    if contact.phone:
        lines.append(f"- Phone: {contact.phone}")
    if contact.location:
        lines.append(f"- Location: {contact.location}")
    for platform, link in contact.social.items():
        lines.append(f"- {platform.capitalize()}: {link.url}")
    return "\n".join(lines) or "No contact details available."


def _resume_text(config: PortfolioConfig) -> str:
    resume = config.resume
    details = [item for item in (resume.file_type, resume.file_size, resume.last_updated) if item]
    text = f"**{resume.title}**"
    if resume.description:
        text += f": {resume.description}"
    if details:
        text += f" ({', '.join(details)})"
    if resume.download_url:
        text += f"\nDownload: {resume.download_url}"
    return text


def _presentation_text(config: PortfolioConfig) -> str:
    personal = config.personal
    parts = [f"{personal.name} - {personal.title}"]
    if personal.location:
        parts.append(f"Based in {personal.location}.")
    if personal.description:
        parts.append(personal.description)
    if config.ai_personality.background_story:
        parts.append(config.ai_personality.background_story)
    return "\n".join(parts)


def _opportunities_text(config: PortfolioConfig) -> str:
    opportunities = config.opportunities
    location = opportunities.preferred_location or "anywhere"
    if opportunities.remote_work:
        location += " or anywhere remote"
    lines = [
        "Here's what I'm looking for:",
        f"- Availability: {opportunities.availability or 'open to discuss'}",
        f"- Location: {location}",
    ]
    if opportunities.focus_areas:
        lines.append(f"- Focus: {', '.join(opportunities.focus_areas)}")
    if opportunities.tech_stack:
        lines.append(f"- Stack: {', '.join(opportunities.tech_stack)}")
    if opportunities.what_i_bring:
        lines.append(f"- What I bring: {opportunities.what_i_bring}")
    if opportunities.motivation:
        lines.append(f"- {opportunities.motivation}")
    lines.append("")
    lines.append("Contact me via:")
    lines.append(_contact_text(config))
    if opportunities.call_to_action:
        lines.append("")
        lines.append(opportunities.call_to_action)
    return "\n".join(lines)


def build_portfolio_tools(config: PortfolioConfig) -> ToolSet:
    return ToolSet(
        [
            ToolSpec(
                name="getProjects",
                description="Shows the projects I have built, with their stack and links.",
                execute=lambda: _projects_text(config),
            ),
            ToolSpec(
                name="getSkills",
                description="Lists my technical skills grouped by category.",
                execute=lambda: _skills_text(config),
            ),
            ToolSpec(
                name="getContact",
                description="Gives my contact details and social profiles.",
                execute=lambda: _contact_text(config),
            ),
            ToolSpec(
                name="getResume",
                description="Gives my resume summary and its download link.",
                execute=lambda: _resume_text(config),
            ),
            ToolSpec(
                name="getPresentation",
                description="Gives a short presentation of who I am and my background.",
                execute=lambda: _presentation_text(config),
            ),
            ToolSpec(
                name="getOpportunities",
                description=(
                    "Summarizes the opportunities I'm looking for and how to reach me. "
                    "Use it when the user asks about my job search or how to contact me for opportunities."
                ),
                execute=lambda: _opportunities_text(config),
            ),
        ]
    )
