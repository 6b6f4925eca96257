# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""Database models for the editor state"""
from .client_state import ClientStateEntry

__all__ = ["ClientStateEntry"]
