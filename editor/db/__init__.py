# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""Database package"""
from .database import Base, create_state_engine, get_database_url, init_db

__all__ = ["Base", "create_state_engine", "get_database_url", "init_db"]
