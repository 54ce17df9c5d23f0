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

"""Structural equality over JSON-like values (scalars, lists and str-keyed dicts)."""

from typing import Any, Mapping


def deep_equal(left: Any, right: Any) -> bool:
    """Compare two JSON-like trees structurally.

    A key that is missing on one side equals the same key holding None on
    the other side. Lists are compared element-wise, booleans never equal
    numbers, and identity is never used as a shortcut for containers.
    """
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        for key in set(left) | set(right):
            left_value = left.get(key)
            right_value = right.get(key)
            if left_value is None and right_value is None:
                continue
            if left_value is None or right_value is None:
                return False
            if not deep_equal(left_value, right_value):
                return False
        return True

    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        if len(left) != len(right):
            return False
        return all(deep_equal(a, b) for a, b in zip(left, right))

    if isinstance(left, (Mapping, list, tuple)) or isinstance(right, (Mapping, list, tuple)):
        return False

    # True == 1 in Python, but a mapping result of true is not a result of 1
    if isinstance(left, bool) != isinstance(right, bool):
        return False

    return left == right
