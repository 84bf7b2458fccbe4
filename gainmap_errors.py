# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Error taxonomy shared by the gain map conversion modules.

Every failure a single conversion can produce is one of three kinds, each tied
to the ConversionStatus it is reported under.
"""

from __future__ import annotations

from enum import StrEnum
from typing import ClassVar, Final

__all__: Final[list[str]] = [
    "ConversionStatus",
    "ConversionError",
    "ValidationError",
    "DecodeError",
    "EncodeError",
]


class ConversionStatus(StrEnum):
    """Outcome of one conversion."""

    SUCCESS = "success"
    VALIDATION_FAILED = "validation_failed"
    DECODE_FAILED = "decode_failed"
    ENCODE_FAILED = "encode_failed"


class ConversionError(Exception):
    """Base exception for conversion errors."""

    status: ClassVar[ConversionStatus] = ConversionStatus.ENCODE_FAILED


class ValidationError(ConversionError):
    """Request options are illegal (mode flags, bit depth, quality, paths)."""

    status = ConversionStatus.VALIDATION_FAILED


class DecodeError(ConversionError):
    """Source could not be read as a PQ or HLG image."""

    status = ConversionStatus.DECODE_FAILED


class EncodeError(ConversionError):
    """Output container could not be encoded or written."""

    status = ConversionStatus.ENCODE_FAILED
