"""Remote repository probing with git ls-remote."""

import logging
from typing import Optional, Tuple

import git
from git import GitCommandError

from ..errors import classify_git_error

logger = logging.getLogger('repoman.git_sync.remote')


def detect_remote_default_branch(remote_url: str) -> Optional[str]:
    """
    Detect the default branch of a remote repository.

    Tries the remote's symbolic HEAD first, then the common branch names.

    Args:
        remote_url: URL of the remote repository

    Returns:
        The branch name, or None when it could not be determined
    """
    git_cmd = git.Git()

    try:
        # Expected format: "ref: refs/heads/main\tHEAD"
        result = git_cmd.ls_remote('--symref', remote_url, 'HEAD')
        for line in result.strip().split('\n'):
            if line.startswith('ref: refs/heads/'):
                branch_name = line.split('ref: refs/heads/')[1].split('\t')[0].strip()
                logger.info(f"Detected default branch via ls-remote: {branch_name}")
                return branch_name
    except GitCommandError as e:
        logger.warning(f"Failed to detect default branch via ls-remote: {e}")
        return None

    for branch_name in ("main", "master", "develop"):
        try:
            if git_cmd.ls_remote('--heads', remote_url, branch_name).strip():
                logger.info(f"Found existing branch on remote: {branch_name}")
                return branch_name
        except GitCommandError as e:
            logger.debug(f"Error checking branch '{branch_name}' on remote: {e}")

    return None


def check_connection(remote_url: str, branch: str) -> Tuple[bool, str]:
    """
    Check that a repository is reachable and has the requested branch.

    Used before a new dependency is added, so that typos surface immediately.

    Args:
        remote_url: URL of the remote repository
        branch: Branch that will be tracked

    Returns:
        Tuple of (success, message)
    """
    if not remote_url or not remote_url.strip():
        return False, "Url can not be empty."
    if not branch or not branch.strip():
        return False, "Either a valid branch or tag must be specified"

    try:
        heads = git.Git().ls_remote('--heads', remote_url.strip(), branch.strip())
    except GitCommandError as e:
        error = classify_git_error(e, "Connection test")
        logger.info(f"Connection test failed for {remote_url}: {error.message}")
        return False, error.message

    if not heads.strip():
        return False, f"Branch '{branch}' does not exist on {remote_url}"

    return True, f"Connected to {remote_url} ({branch})"
