"""Root pytest configuration for the gitscope monorepo.

Each sub-project directory (``scan_engine/``, ``scan_api/``, ``scan_cli/``)
shares its name with the package it holds.  Under ``--import-mode=importlib``
pytest names ``scan_api/tests/conftest.py`` ``scan_api.tests.conftest`` and,
when ``scan_api`` is not yet imported, registers the sub-project directory
itself under that name.  Importing the real packages here, before any
sub-project conftest loads, keeps ``sys.modules`` pointing at them.
"""

from __future__ import annotations

import scan_api  # noqa: F401
import scan_cli  # noqa: F401
import scan_engine  # noqa: F401
