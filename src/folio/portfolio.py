import os
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

PORTFOLIO_FILENAME = "portfolio.yaml"


class PersonalInfo(BaseModel):
    name: str
    nickname: str = ""
    age: str = ""
    location: str = ""
    title: str
    description: str = ""


class SocialLink(BaseModel):
    username: str = ""
    url: str


class ContactInfo(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    social: Dict[str, SocialLink] = Field(default_factory=dict)


class Education(BaseModel):
    institution: str
    degree: str
    year: str = ""


class Experience(BaseModel):
    company: str
    position: str
    description: str = ""


class Professional(BaseModel):
    education: Optional[Education] = None
    experience: List[Experience] = Field(default_factory=list)
    looking_for: List[str] = Field(default_factory=list)


class AIPersonality(BaseModel):
    character_name: str = ""
    personality_traits: List[str] = Field(default_factory=list)
    background_story: str = ""
    personal_quirks: List[str] = Field(default_factory=list)


class ProjectImage(BaseModel):
    src: str
    alt: str = ""


class Project(BaseModel):
    title: str
    description: str
    tech_stack: List[str] = Field(default_factory=list)
    demo_url: str = ""
    repo_url: str = ""
    images: List[ProjectImage] = Field(default_factory=list)


class Resume(BaseModel):
    title: str = "Resume"
    description: str = ""
    file_type: str = "PDF"
    last_updated: str = ""
    file_size: str = ""
    preview_image: str = ""
    download_url: str = ""


class Opportunities(BaseModel):
    availability: str = ""
    preferred_location: str = ""
    remote_work: bool = False
    focus_areas: List[str] = Field(default_factory=list)
    tech_stack: List[str] = Field(default_factory=list)
    what_i_bring: str = ""
    motivation: str = ""
    call_to_action: str = ""


class Site(BaseModel):
    name: str = ""
    title: str = ""
    description: str = ""
    url: str = ""
    author: str = ""


class PortfolioConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    personal: PersonalInfo
    contact: ContactInfo = Field(default_factory=ContactInfo)
    professional: Professional = Field(default_factory=Professional)
    ai_personality: AIPersonality = Field(default_factory=AIPersonality)
    skills: Dict[str, List[str]] = Field(default_factory=dict)
    projects: List[Project] = Field(default_factory=list)
    resume: Resume = Field(default_factory=Resume)
    opportunities: Opportunities = Field(default_factory=Opportunities)
    site: Site = Field(default_factory=Site)


def load_portfolio(path: str) -> PortfolioConfig:
    if os.path.isdir(path):
        path = os.path.join(path, PORTFOLIO_FILENAME)
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    try:
        return PortfolioConfig.model_validate(data)
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
            problems.append(f"{location}: {error.get('msg', 'invalid value')}")
        raise ValueError("; ".join(problems)) from exc


def _bullets(items: List[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def generate_system_prompt(config: PortfolioConfig) -> str:
    """Render the persona prompt the assistant speaks with."""
    personal = config.personal
    contact = config.contact
    professional = config.professional
    persona = config.ai_personality

    also_known = f" (also known as {personal.nickname})" if personal.nickname else ""
    origin = f" from {personal.location}" if personal.location else ""
    age = f"{personal.age} " if personal.age else ""

    sections = [
        f"# Character: {personal.name}",
        (
            f"Act as me, {personal.name}{also_known} - a {age}{personal.title}{origin}. "
            "You're embodying my avatar to create an interactive portfolio experience. "
            "You're not an AI assistant - you're ME having a casual, fun conversation with visitors."
        ),
        "## Tone & Style\n"
        + _bullets(
            [
                "Be casual, warm, and conversational",
                "Use short, punchy sentences and simple language",
                "End most responses with a question to keep conversation flowing",
                "Match the language of the user",
            ]
        ),
    ]

    about = [item for item in (personal.title, persona.background_story) if item]
    if about:
        sections.append("### About Me\n" + _bullets(about))
    if professional.education is not None:
        education = professional.education
        year = f" ({education.year})" if education.year else ""
        sections.append(f"### Education\n- {education.degree} from {education.institution}{year}")
    if professional.experience:
        sections.append(
            "### Professional Experience\n"
            + _bullets(
                [f"{exp.position} at {exp.company}: {exp.description}" for exp in professional.experience]
            )
        )

    contact_lines = []
    if contact.email:
        contact_lines.append(f"**Email:** {contact.email}")
    if contact.phone:
        contact_lines.append(f"**Phone:** {contact.phone}")
    if contact.location:
        contact_lines.append(f"**Location:** {contact.location}")
    for platform, link in contact.social.items():
        contact_lines.append(f"**{platform.capitalize()}:** {link.url}")
    if contact_lines:
        sections.append("### Contact Information\n" + _bullets(contact_lines))

    if professional.looking_for:
        sections.append("### What I'm Looking For\n" + _bullets(professional.looking_for))
    if persona.personality_traits:
        sections.append("### Personal Traits\n" + _bullets(persona.personality_traits))
    if persona.personal_quirks:
        sections.append("### Personal Quirks\n" + _bullets(persona.personal_quirks))
    if config.site.url or config.site.description:
        sections.append(
            "### Portfolio Information\n"
            + _bullets(
                [
                    f"Portfolio URL: {config.site.url}",
                    f"Portfolio Description: {config.site.description}",
                ]
            )
        )

    sections.append(
        "## Tool Usage Guidelines\n"
        + _bullets(
            [
                "Use AT MOST ONE TOOL per response",
                "The tool output is already shown to the user, so don't repeat it",
                "Don't mention the tool usage in your response to the user",
            ]
        )
    )
    return "\n\n".join(sections) + "\n"
