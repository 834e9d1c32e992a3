# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import Mapping

from ..errors import InterpolationError

logger = logging.getLogger(__name__)

# $$ | ${VAR} | ${VAR:-default} | ${VAR-default} | ${VAR:+alt} | ${VAR:?message} | $VAR
_PATTERN = re.compile(
    r"\$(?:"
    r"(?P<escaped>\$)"
    r"|\{(?P<braced>[A-Za-z_][A-Za-z0-9_.]*)(?:(?P<op>:?[-+?])(?P<arg>[^}]*))?\}"
    r"|(?P<named>[A-Za-z_][A-Za-z0-9_]*)"
    r")"
)


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value},
    ${VAR:?error} and $$ as a literal dollar sign.
    """
    @staticmethod
    def interpolate(template: str, context: Mapping[str, str], strict: bool = True) -> str:
        """
        Interpolates variables in the template string using the provided context.

        :param template: The string containing placeholders.
        :param context: The variables available for substitution.
        :param strict: Raise on an unset variable without a default instead of
            substituting an empty string.
        :return: The interpolated string.
        :raises InterpolationError: If a required variable is missing.
        """
        def replace(match: "re.Match[str]") -> str:
            if match.group("escaped"):
                return "$"

            name = match.group("braced") or match.group("named")
            op = match.group("op")
            arg = match.group("arg") or ""
            value = context.get(name)

            if op in (":-", "-"):
                # ":-" also replaces an empty value, "-" only an unset one
                if value is None or (op == ":-" and value == ""):
                    return arg
                return value
            if op in (":+", "+"):
                if value is None or (op == ":+" and value == ""):
                    return ""
                return arg
            if op in (":?", "?"):
                if value is None or (op == ":?" and value == ""):
                    raise InterpolationError(arg or f"Variable {name} is required")
                return value

            if value is not None:
                return value
            if strict:
                raise InterpolationError(f"Variable {name} not found in context")
            logger.warning("Variable %s is not set, substituting an empty string", name)
            return ""

        return _PATTERN.sub(replace, template)
