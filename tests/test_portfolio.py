import asyncio
from pathlib import Path

import pytest

from src.folio.portfolio import PORTFOLIO_FILENAME, generate_system_prompt, load_portfolio
from src.folio.tools import ToolSet, ToolSpec, build_portfolio_tools

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SAMPLE_CONFIG = PROJECT_ROOT / "config" / PORTFOLIO_FILENAME


def test_sample_portfolio_loads() -> None:
    config = load_portfolio(str(SAMPLE_CONFIG))

    assert config.personal.name == "Alex Martin"
    assert config.projects
    assert config.skills


def test_directory_path_resolves_to_portfolio_file() -> None:
    config = load_portfolio(str(SAMPLE_CONFIG.parent))
    assert config.personal.name == "Alex Martin"


def test_validation_errors_name_the_field(tmp_path: Path) -> None:
    path = tmp_path / PORTFOLIO_FILENAME
    path.write_text("personal:\n  name: Sam\n")

    with pytest.raises(ValueError) as excinfo:
        load_portfolio(str(path))

    assert "personal -> title" in str(excinfo.value)


def test_empty_file_reports_missing_personal_section(tmp_path: Path) -> None:
    path = tmp_path / PORTFOLIO_FILENAME
    path.write_text("")

    with pytest.raises(ValueError, match="personal"):
        load_portfolio(str(path))


def test_system_prompt_describes_the_owner() -> None:
    config = load_portfolio(str(SAMPLE_CONFIG))

    prompt = generate_system_prompt(config)

    assert prompt.startswith("# Character: Alex Martin")
    assert "Full-stack developer" in prompt
    assert "alex.martin@example.com" in prompt
    assert "## Tool Usage Guidelines" in prompt


def test_portfolio_tools_render_config_sections() -> None:
    config = load_portfolio(str(SAMPLE_CONFIG))
    tools = build_portfolio_tools(config)

    assert tools.names() == [
        "getProjects",
        "getSkills",
        "getContact",
        "getResume",
        "getPresentation",
        "getOpportunities",
    ]
    assert all(definition["type"] == "function" for definition in tools.definitions())
    contact = asyncio.run(tools.execute("getContact", {}))
    assert "alex.martin@example.com" in contact
    projects = asyncio.run(tools.execute("getProjects"))
    assert config.projects[0].title in projects
    opportunities = asyncio.run(tools.execute("getOpportunities"))
    assert "Contact me via:" in opportunities


def test_tool_failures_are_returned_as_text() -> None:
    def explode() -> str:
        raise RuntimeError("disk on fire")

    tools = ToolSet([ToolSpec(name="broken", description="fails", execute=explode)])

    assert asyncio.run(tools.execute("broken")) == "Error: tool 'broken' failed: disk on fire"
    assert asyncio.run(tools.execute("missing")) == "Error: unknown tool 'missing'"


def test_non_string_results_are_serialized() -> None:
    tools = ToolSet([ToolSpec(name="count", description="numbers", execute=lambda: {"total": 3})])

    assert asyncio.run(tools.execute("count")) == '{"total": 3}'


def test_duplicate_tool_names_are_rejected() -> None:
    tool = ToolSpec(name="same", description="", execute=lambda: "")

    with pytest.raises(ValueError):
        ToolSet([tool, tool])
