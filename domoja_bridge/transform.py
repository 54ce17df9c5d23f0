#
# Copyright 2025 The DomojaBridge contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#

"""State mapping evaluation between device states and characteristic values.

A mapping is a flat list of ``criteria, result`` pairs, for example::

    ["ON", True, "OFF", False, "*", None]

Criteria are compared with the stringified input value, ``None`` only
matches ``None`` and a ``"*"`` criteria in the last pair matches anything.
Values that match no pair are passed through untouched.
"""

import logging
from typing import Any, List, Optional, Sequence

logger = logging.getLogger(__name__)

WILDCARD = "*"


def to_str(value: Any) -> str:
    """Stringify a value the way the Domoja server and its clients do.

    Booleans are lower case, ``None`` is ``"null"`` and integral floats
    lose their fractional part, so ``21.0`` and ``21`` compare equal.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def has_pair_length(mapping: Sequence[Any]) -> bool:
    """Check that a mapping is made of complete criteria/result pairs."""
    return len(mapping) % 2 == 0


def transform(mapping: Optional[Sequence[Any]], value: Any) -> Any:
    """Transform a value through a state mapping.

    Args:
        mapping: Flat ``[criteria, result, ...]`` list, or None for no mapping
        value: Raw value to transform

    Returns:
        The result of the first matching pair, or ``value`` unchanged
    """
    logger.debug(f"mapping: {mapping}")
    logger.debug(f"value: {value!r}")

    if mapping is not None:
        if not has_pair_length(mapping):
            logger.warning(f"Mapping {list(mapping)} should have a pair length!")

        last_pair = (len(mapping) // 2 - 1) * 2
        for i in range(0, len(mapping) - 1, 2):
            criteria = mapping[i]
            result = mapping[i + 1]
            if criteria is None:
                if value is None:
                    logger.debug(f"transformed value: {result!r}")
                    return result
                continue
            if value is not None and to_str(value) == to_str(criteria):
                logger.debug(f"transformed value: {result!r}")
                return result
            if criteria == WILDCARD and i == last_pair:
                logger.debug(f"transformed value: {result!r}")
                return result

    logger.debug(f"value not transformed: {value!r}")
    return value


def mapping_to_string(mapping: Sequence[Any]) -> str:
    """Render a mapping as ``criteria=>result`` pairs for the summary log."""
    pairs: List[str] = []
    for i in range(0, len(mapping), 2):
        result = mapping[i + 1] if i + 1 < len(mapping) else None
        pairs.append(f"{to_str(mapping[i])}=>{to_str(result)}")
    return ', '.join(pairs)
