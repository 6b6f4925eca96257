# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Eflo Editor Tests

Test organization:
- test_session_store.py: Tab transitions, canvas cache, saving, persistence wiring
- test_debug_stream.py: Incremental line decoding and the stream consumer
- test_debug_runner.py: Debug run coordination across tab switches
- test_tab_storage.py: Storage backends and corruption tolerance
- test_client.py: Workflow API client error mapping and retries
- test_canvas.py, test_execution_history.py, test_cli.py
"""
