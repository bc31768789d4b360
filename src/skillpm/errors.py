from __future__ import annotations

import re


class SkillpmError(RuntimeError):
    pass


class InvalidReferenceError(SkillpmError):
    pass


class InvalidGitUrlError(InvalidReferenceError):
    pass


class SourceResolutionError(SkillpmError):
    pass


class ConfigError(SkillpmError):
    pass


class FetchError(SkillpmError):
    pass


_AUTH_ERROR_PATTERNS = (
    re.compile(r"permission denied", re.IGNORECASE),
    re.compile(r"could not read from remote", re.IGNORECASE),
    re.compile(r"authentication failed", re.IGNORECASE),
    re.compile(r"fatal: repository.*not found", re.IGNORECASE),
    re.compile(r"host key verification failed", re.IGNORECASE),
    re.compile(r"access denied", re.IGNORECASE),
    re.compile(r"unauthorized", re.IGNORECASE),
    re.compile(r"403"),
    re.compile(r"401"),
)


def detect_url_type(url: str) -> str:
    if url.startswith(("git@", "ssh://")):
        return "ssh"
    if url.startswith(("http://", "https://")):
        return "https"
    return "unknown"


def is_authentication_error(message: str) -> bool:
    return any(p.search(message) for p in _AUTH_ERROR_PATTERNS)


class GitCommandError(FetchError):
    """
    A git invocation against a remote repository failed.

    For authentication-looking failures the message carries tips for configuring
    credentials for the URL flavour (ssh vs https).
    """

    def __init__(self, repo_url: str, stderr: str, *, action: str = "clone") -> None:
        self.repo_url = repo_url
        self.stderr = stderr
        self.is_auth_error = is_authentication_error(stderr)
        self.url_type = detect_url_type(repo_url)

        message = f"Failed to {action} repository: {repo_url}"
        if self.is_auth_error:
            message += "\n\nTip: For private repos, ensure git credentials are configured:"
            if self.url_type == "ssh":
                message += "\n  - Check ~/.ssh/id_rsa or ~/.ssh/id_ed25519"
                message += "\n  - Ensure the SSH key is added to your git hosting service"
            else:
                message += "\n  - Run 'git config --global credential.helper store'"
                message += "\n  - Or use a personal access token in the URL"
        elif stderr.strip():
            message += f"\n{stderr.strip()}"
        super().__init__(message)


class UnknownAgentError(SkillpmError):
    pass
