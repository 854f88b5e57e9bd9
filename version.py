import subprocess
import logging

logger = logging.getLogger(__name__)


def _git(*args) -> str:
    return subprocess.check_output(
        ['git', *args],
        stderr=subprocess.DEVNULL,
        text=True
    ).strip()


def get_version():
    """Build a version string from the latest git tag and working tree state."""
    try:
        tag = _git('describe', '--tags', '--abbrev=0')
        commit = _git('rev-parse', '--short', 'HEAD')
        tag_commit = _git('rev-list', '-n', '1', tag)[:7]

        dirty = subprocess.call(
            ['git', 'diff-index', '--quiet', 'HEAD', '--'],
            stderr=subprocess.DEVNULL
        ) != 0

        version = tag if commit == tag_commit else f"{tag}-{commit}"
        return f"{version}-dev" if dirty else version

    except (subprocess.CalledProcessError, FileNotFoundError):
        logger.debug("Could not determine version from git, using fallback")
        return "v0.1.0"


__version__ = get_version()
