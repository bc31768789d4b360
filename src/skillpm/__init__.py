from ._version import __version__
from .agents import AgentSpec, default_agents
from .cache import RepoCache
from .errors import (
    FetchError,
    GitCommandError,
    InvalidGitUrlError,
    InvalidReferenceError,
    SkillpmError,
    SourceResolutionError,
)
from .installer import Installer, InstallResult
from .manager import LockFile, OutdatedInfo, SkillInstallReport, SkillManager
from .paths import is_path_safe, sanitize_name
from .refs import ParsedReference, ParsedVersion, RefResolver, parse_ref, parse_version
from .source_path import resolve_skill_dir

__all__ = [
    "__version__",
    "AgentSpec",
    "FetchError",
    "GitCommandError",
    "InstallResult",
    "Installer",
    "InvalidGitUrlError",
    "InvalidReferenceError",
    "LockFile",
    "OutdatedInfo",
    "ParsedReference",
    "ParsedVersion",
    "RefResolver",
    "RepoCache",
    "SkillInstallReport",
    "SkillManager",
    "SkillpmError",
    "SourceResolutionError",
    "default_agents",
    "is_path_safe",
    "parse_ref",
    "parse_version",
    "resolve_skill_dir",
    "sanitize_name",
]
