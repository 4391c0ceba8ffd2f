import os
import re
from collections.abc import Mapping

_ENV_VAR_PATTERN = re.compile(r"\$\{([a-zA-Z_][a-zA-Z0-9_]*)\}")


def expand_env_vars(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Replace ``${VAR_NAME}`` placeholders with environment values.

    Unset variables expand to an empty string. Other ``$`` forms are left
    untouched so passwords containing a dollar sign survive.
    """
    if not value:
        return value

    env = os.environ if environ is None else environ
    return _ENV_VAR_PATTERN.sub(lambda match: env.get(match.group(1), ""), value)
