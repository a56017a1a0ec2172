from __future__ import annotations

import argparse
import copy
import logging
import re
import shutil
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx
import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.folio.portfolio import PORTFOLIO_FILENAME, PortfolioConfig  # noqa: E402

logger = logging.getLogger("update_portfolio_from_cv")

DEFAULT_CONFIG = PROJECT_ROOT / "config" / PORTFOLIO_FILENAME
EXTRACTED_SKILLS_KEY = "extracted_from_cv"

SECTION_HEADERS: Dict[str, tuple[str, ...]] = {
    "summary": ("summary", "about", "about me", "profile", "objective"),
    "education": ("education", "academic background", "qualifications"),
    "experience": ("experience", "work experience", "employment", "professional experience"),
    "skills": ("skills", "technical skills", "competencies", "technologies"),
    "projects": ("projects", "side projects", "selected projects"),
}

NAME_RE = re.compile(r"^[A-Z][a-z]+(?:[ -][A-Z][a-z]+)+$")
EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)*\.[A-Za-z]{2,}")
PHONE_RE = re.compile(r"\+?\d[\d\s().-]{8,}\d")
URL_RE = re.compile(r"https?://[^\s,;]+")
SOCIAL_RES = {
    "linkedin": re.compile(r"linkedin\.com/in/([^/?#\s]+)"),
    "github": re.compile(r"github\.com/([^/?#\s]+)"),
    "instagram": re.compile(r"instagram\.com/([^/?#\s]+)"),
}
LOCATION_RE = re.compile(r"^(?:location\s*:|address\s*:|based in)\s*(.+)$", re.IGNORECASE)
YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")
PERIOD_RE = re.compile(r"\b(?:19|20)\d{2}\s*[-–]\s*(?:present|current|(?:19|20)\d{2})\b", re.IGNORECASE)
ROLE_SPLIT_RE = re.compile(r"\s+(?:at|@|-|–|\|)\s+|,\s+")
BULLET_RE = re.compile(r"^[•*\-–]\s*")
SKILL_SPLIT_RE = re.compile(r"[,;|•]")
DEGREE_WORDS = ("bachelor", "master", "msc", "bsc", "phd", "diploma", "degree", "certificate")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Merge details from a plain-text CV into the portfolio config")
    parser.add_argument("cv", nargs="?", help="path or http(s) URL of a plain-text CV")
    parser.add_argument("--config", default=str(DEFAULT_CONFIG), help="portfolio YAML to update")
    parser.add_argument(
        "--use-existing", action="store_true", help="read the CV from resume.download_url in the config"
    )
    parser.add_argument("--dry-run", action="store_true", help="print the merged YAML instead of writing it")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def read_cv(source: str, timeout: float = 30.0) -> str:
    if source.startswith(("http://", "https://")):
        logger.info("fetching cv url=%s", source)
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            response = client.get(source)
        response.raise_for_status()
        return response.text
    logger.info("reading cv path=%s", source)
    return Path(source).read_text(encoding="utf-8")


def _section_bounds(lines: List[str]) -> Dict[str, tuple[int, int]]:
    starts: List[tuple[int, str]] = []
    for index, line in enumerate(lines):
        header = line.rstrip(":").strip().lower()
        for key, keywords in SECTION_HEADERS.items():
            if header in keywords and key not in {name for _, name in starts}:
                starts.append((index, key))
                break
    bounds = {}
    for position, (index, key) in enumerate(starts):
        end = starts[position + 1][0] if position + 1 < len(starts) else len(lines)
        bounds[key] = (index + 1, end)
    return bounds


def _section(lines: List[str], bounds: Dict[str, tuple[int, int]], key: str) -> List[str]:
    if key not in bounds:
        return []
    start, end = bounds[key]
    return lines[start:end]


def _extract_name(lines: List[str]) -> Optional[str]:
    for line in lines[:5]:
        if len(line) <= 50 and NAME_RE.match(line):
            return line
    return None


def _extract_social(header: List[str]) -> Dict[str, Dict[str, str]]:
    social: Dict[str, Dict[str, str]] = {}
    for url in URL_RE.findall(" ".join(header)):
        url = url.rstrip(".)/")
        for network, pattern in SOCIAL_RES.items():
            match = pattern.search(url)
            if match and network not in social:
                social[network] = {"username": match.group(1), "url": url}
    return social


def _extract_experience(section: List[str]) -> List[Dict[str, str]]:
    items: List[Dict[str, Any]] = []
    current: Optional[Dict[str, Any]] = None
    for line in section:
        period = PERIOD_RE.search(line)
        if period:
            heading = (line[: period.start()] + line[period.end():]).strip(" ()|,-–")
            position, company = _split_role(heading)
            current = {"position": position, "company": company or "Unknown", "details": []}
            items.append(current)
        elif current is not None:
            current["details"].append(BULLET_RE.sub("", line))
    return [
        {"company": item["company"], "position": item["position"], "description": " ".join(item["details"])}
        for item in items
        if item["position"]
    ]


def _split_role(heading: str) -> tuple[str, str]:
    parts = ROLE_SPLIT_RE.split(heading, maxsplit=1)
    if len(parts) == 1:
        return parts[0].strip(), ""
    return parts[0].strip(), parts[1].strip()


def _extract_education(section: List[str]) -> Optional[Dict[str, str]]:
    for position, line in enumerate(section):
        lowered = line.lower()
        if not any(word in lowered for word in DEGREE_WORDS):
            continue
        year = YEAR_RE.findall(line)
        degree = YEAR_RE.sub("", line).strip(" ()|,-–")
        institution = ""
        if position + 1 < len(section) and not YEAR_RE.fullmatch(section[position + 1]):
            institution = YEAR_RE.sub("", section[position + 1]).strip(" ()|,-–")
        return {"institution": institution or "Unknown", "degree": degree, "year": year[-1] if year else ""}
    return None


def _extract_skills(section: List[str]) -> List[str]:
    skills: List[str] = []
    for line in section:
        line = BULLET_RE.sub("", line)
        if ":" in line:
            line = line.split(":", 1)[1]
        for skill in SKILL_SPLIT_RE.split(line):
            skill = skill.strip()
            if skill and skill not in skills:
                skills.append(skill)
    return skills


def extract_cv_fields(text: str) -> Dict[str, Any]:
    """Pull the portfolio-relevant fields out of plain CV text.

    Only fields that were actually found are present in the result.
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    bounds = _section_bounds(lines)
    header_end = min((start - 1 for start, _ in bounds.values()), default=min(len(lines), 20))
    header = lines[:header_end]

    fields: Dict[str, Any] = {}
    name = _extract_name(header)
    if name:
        fields["name"] = name
    joined = " ".join(header)
    email = EMAIL_RE.search(joined)
    if email:
        fields["email"] = email.group(0)
    # Strip URLs first so digits inside profile links are not read as a number.
    phone = PHONE_RE.search(URL_RE.sub(" ", joined))
    if phone:
        fields["phone"] = phone.group(0).strip()
    for line in header:
        location = LOCATION_RE.match(line)
        if location:
            fields["location"] = location.group(1).strip()
            break
    social = _extract_social(header)
    if social:
        fields["social"] = social

    summary = [line for line in _section(lines, bounds, "summary") if len(line) > 20]
    if summary:
        fields["description"] = " ".join(summary)
    education = _extract_education(_section(lines, bounds, "education"))
    if education:
        fields["education"] = education
    experience = _extract_experience(_section(lines, bounds, "experience"))
    if experience:
        fields["experience"] = experience
    skills = _extract_skills(_section(lines, bounds, "skills"))
    if skills:
        fields["skills"] = skills
    return fields


def _mapping(parent: Dict[str, Any], key: str) -> Dict[str, Any]:
    # YAML leaves an empty section as None.
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
        parent[key] = value
    return value


def merge_into_config(
    config: Dict[str, Any], fields: Dict[str, Any], cv_url: Optional[str] = None, now: Optional[datetime] = None
) -> tuple[Dict[str, Any], List[str]]:
    """Return a merged copy of ``config`` and the names of the fields that changed."""
    merged = copy.deepcopy(config)
    personal = _mapping(merged, "personal")
    contact = _mapping(merged, "contact")
    updated: List[str] = []

    def assign(section: Dict[str, Any], key: str, value: Any, label: str) -> None:
        if section.get(key) != value:
            section[key] = value
            if label not in updated:
                updated.append(label)

    if "name" in fields:
        assign(personal, "name", fields["name"], "name")
    if "description" in fields:
        assign(personal, "description", fields["description"], "description")
    if "location" in fields:
        assign(personal, "location", fields["location"], "location")
        assign(contact, "location", fields["location"], "location")
    for key in ("email", "phone"):
        if key in fields:
            assign(contact, key, fields[key], key)
    social = _mapping(contact, "social")
    for network, link in fields.get("social", {}).items():
        assign(social, network, link, network)

    professional = _mapping(merged, "professional")
    if "education" in fields:
        assign(professional, "education", fields["education"], "education")
    if "experience" in fields:
        assign(professional, "experience", fields["experience"], "experience")

    if "skills" in fields:
        skills = _mapping(merged, "skills")
        known = {skill.lower() for group in skills.values() for skill in group or []}
        extracted = list(skills.get(EXTRACTED_SKILLS_KEY) or [])
        for skill in fields["skills"]:
            if skill.lower() not in known:
                extracted.append(skill)
                known.add(skill.lower())
        if extracted:
            assign(skills, EXTRACTED_SKILLS_KEY, extracted, "skills")

    if cv_url:
        resume = _mapping(merged, "resume")
        assign(resume, "download_url", cv_url, "cv_url")
        if updated:
            resume["last_updated"] = (now or datetime.now()).strftime("%B %Y")

    return merged, updated


def run(source: str | None, config_path: Path, use_existing: bool, dry_run: bool) -> int:
    with config_path.open("r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}
    if use_existing:
        source = (config.get("resume") or {}).get("download_url")
        if not source:
            logger.error("no resume.download_url in %s", config_path)
            return 1
    if not source:
        logger.error("a CV path or URL is required")
        return 1

    fields = extract_cv_fields(read_cv(source))
    cv_url = source if source.startswith(("http://", "https://")) else None
    merged, updated = merge_into_config(config, fields, cv_url=cv_url)
    # Refuse to write a file the server could not load.
    PortfolioConfig.model_validate(merged)

    rendered = yaml.safe_dump(merged, sort_keys=False, allow_unicode=True, width=100)
    if dry_run:
        sys.stdout.write(rendered)
        logger.info("dry run, updated=%s", ",".join(updated) or "-")
        return 0
    if not updated:
        logger.info("portfolio already matches the CV, nothing written")
        return 0
    backup = config_path.with_name(f"{config_path.name}.backup.{datetime.now():%Y%m%dT%H%M%S}")
    shutil.copyfile(config_path, backup)
    config_path.write_text(rendered, encoding="utf-8")
    logger.info("portfolio updated path=%s backup=%s updated=%s", config_path, backup, ",".join(updated))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    try:
        return run(args.cv, Path(args.config), args.use_existing, args.dry_run)
    except (OSError, httpx.HTTPError, yaml.YAMLError, ValueError) as exc:
        logger.error("portfolio update failed: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
