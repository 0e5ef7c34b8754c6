"""
Clinicflow Tests

Running Tests:
    # Install with test dependencies
    pip install -e ".[test]"

    # Run everything
    pytest -v

    # Run only the unit tests
    pytest tests/unit -v

Layout:
    - unit/         availability, ledger, lifecycle table, waitlist, sessions,
                    queue, engine and daily summary, expiry sweeper, locks,
                    errors, config, collaborators
    - integration/  end-to-end booking flows and the HTTP API

The engine runs against a temporary SQLite database (aiosqlite) with a
fixed clock; Redis locks are disabled so only in-process locks apply.
"""
