"""
Command-line interface for the CD48 coincidence counter.

Built on Click; every device command takes the same connection
(`--mock`, `--config`, `--retries`, `--timeout`) and logging
(`--log-level`, `--log-to-stdout`, ...) options, and measurement commands can
print or save their results as JSON or CSV.

Examples
--------
Measuring a count rate against the simulated counter:
```bash
$ cd48 rate --mock --channel 0 --duration 0.5 --repeats 5
```

Saving a coincidence measurement:
```bash
$ cd48 coincidence -d 10 -o coincidences.csv
```

CLI Tree
--------

```
$ cd48 --tree
cli
└── coincidence
└── counts
└── ports
└── rate
└── version
```
"""

from .base import cli, tree_option
