# -*- coding: utf-8 -*-
"""
Utility functions and constants for the cd48 package.

- Logging configuration and management (`cd48.util.logging`)
- Measurement export to JSON/CSV (`cd48.util.export`)
- Default timings, limits and hardware constants (`cd48.util.defaults`)

Examples
--------
Saving a rate series:
```python
from cd48.util import save_measurements
save_measurements("rates.csv", series)
```
"""

from .export import save_measurements, to_csv, to_json
from .logging import (
    clear_log,
    format_error_response,
    get_log_filename,
    log_default_path_client,
    shutdown_client_log,
    start_client_log,
)
