from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Protocol

from .errors import UnknownAgentError


@dataclass(frozen=True)
class AgentSpec:
    id: str
    display_name: str
    skills_dir: str  # relative to the project root
    global_skills_dir: Path
    detect_paths: tuple[Path, ...] = ()
    detect_project_paths: tuple[str, ...] = ()


AgentTable = Mapping[str, AgentSpec]

# id, display name, project dir, global dir (relative to home), home markers, project markers
_AGENT_ROWS: tuple[tuple[str, str, str, str, tuple[str, ...], tuple[str, ...]], ...] = (
    ("amp", "Amp", ".agents/skills", ".config/agents/skills", (".config/amp",), ()),
    ("antigravity", "Antigravity", ".agent/skills", ".gemini/antigravity/skills", (".gemini/antigravity",), (".agent",)),
    ("claude-code", "Claude Code", ".claude/skills", ".claude/skills", (".claude",), ()),
    ("clawdbot", "Clawdbot", "skills", ".clawdbot/skills", (".clawdbot",), ()),
    ("codex", "Codex", ".codex/skills", ".codex/skills", (".codex",), ()),
    ("cursor", "Cursor", ".cursor/skills", ".cursor/skills", (".cursor",), ()),
    ("droid", "Droid", ".factory/skills", ".factory/skills", (".factory/skills",), ()),
    ("gemini-cli", "Gemini CLI", ".gemini/skills", ".gemini/skills", (".gemini",), ()),
    ("github-copilot", "GitHub Copilot", ".github/skills", ".copilot/skills", (".copilot",), (".github",)),
    ("goose", "Goose", ".goose/skills", ".config/goose/skills", (".config/goose",), ()),
    ("kilo", "Kilo Code", ".kilocode/skills", ".kilocode/skills", (".kilocode",), ()),
    ("kiro-cli", "Kiro CLI", ".kiro/skills", ".kiro/skills", (".kiro",), ()),
    ("opencode", "OpenCode", ".opencode/skills", ".config/opencode/skills", (".config/opencode", ".claude/skills"), ()),
    ("roo", "Roo Code", ".roo/skills", ".roo/skills", (".roo",), ()),
    ("trae", "Trae", ".trae/skills", ".trae/skills", (".trae",), ()),
    ("windsurf", "Windsurf", ".windsurf/skills", ".codeium/windsurf/skills", (".codeium/windsurf",), ()),
    ("neovate", "Neovate", ".neovate/skills", ".neovate/skills", (".neovate",), ()),
)


def default_agents(home: Path | None = None) -> AgentTable:
    home = (home or Path.home()).expanduser()
    table = {
        agent_id: AgentSpec(
            id=agent_id,
            display_name=display,
            skills_dir=skills_dir,
            global_skills_dir=home / global_dir,
            detect_paths=tuple(home / p for p in home_markers),
            detect_project_paths=project_markers,
        )
        for agent_id, display, skills_dir, global_dir, home_markers, project_markers in _AGENT_ROWS
    }
    return MappingProxyType(table)


def all_agent_ids(table: AgentTable) -> list[str]:
    return list(table.keys())


def is_valid_agent(table: AgentTable, agent_id: str) -> bool:
    return agent_id in table


def get_agent(table: AgentTable, agent_id: str) -> AgentSpec:
    try:
        return table[agent_id]
    except KeyError as e:
        known = ", ".join(table)
        raise UnknownAgentError(f"Unknown agent {agent_id!r}. Known agents: {known}") from e


class AgentProbe(Protocol):
    def is_installed(self, agent: AgentSpec) -> bool:
        ...


class PathExistsProbe:
    """An agent counts as installed when any of its marker paths exists."""

    def __init__(self, *, cwd: Path | None = None) -> None:
        self.cwd = cwd or Path.cwd()

    def is_installed(self, agent: AgentSpec) -> bool:
        if any(p.exists() for p in agent.detect_paths):
            return True
        return any((self.cwd / p).exists() for p in agent.detect_project_paths)


def detect_installed_agents(table: AgentTable, probe: AgentProbe, *, only: Iterable[str] | None = None) -> list[str]:
    ids = list(only) if only is not None else all_agent_ids(table)
    return [agent_id for agent_id in ids if agent_id in table and probe.is_installed(table[agent_id])]
