# Copyright (c) 2024-2026 nickdsmith. All Rights Reserved.
# SPDX-License-Identifier: PROPRIETARY
#
# This file is proprietary and confidential. Unauthorized copying of this file,
# via any medium is strictly prohibited.

"""Core utility functions."""

from core.utils.json_serializers import json_serializer
from core.utils.worker_id import generate_worker_id

__all__ = ["json_serializer", "generate_worker_id"]
