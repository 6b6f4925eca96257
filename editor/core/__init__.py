# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Core infrastructure modules for the Eflo editor.

This package contains foundational components used throughout the client:

- exceptions: Standardized error hierarchy
- canvas: Workflow definition <-> canvas conversion
- http.client: Async workflow API client
- http.debug_stream: Debug run event stream consumer
- logging_config: Logging setup
"""

from .exceptions import (
    EfloException,
    NetworkError,
    ResourceNotFoundError,
    RepositoryTimeoutError,
    StreamProtocolError,
    StreamTransportError,
    PersistenceError
)

from .canvas import (
    materialize_canvas,
    serialize_canvas
)

__all__ = [
    # Exceptions
    "EfloException",
    "NetworkError",
    "ResourceNotFoundError",
    "RepositoryTimeoutError",
    "StreamProtocolError",
    "StreamTransportError",
    "PersistenceError",
    # Canvas conversion
    "materialize_canvas",
    "serialize_canvas"
]
