# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Client State Database Model
Key/value rows holding durable editor state as raw JSON text
"""
from sqlalchemy import Column, String, Text, DateTime
from db.database import Base
import datetime


class ClientStateEntry(Base):
    """
    One durable key, e.g. the open tab list or the active tab id.
    The value is stored verbatim; decoding is left to the caller.
    """
    __tablename__ = 'client_state'

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    def __repr__(self):
        return f"<ClientStateEntry(key='{self.key}')>"
