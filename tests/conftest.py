"""Pytest configuration and shared fixtures."""

import os
import tempfile

from hypothesis import settings

# Log files and block databases from test runs stay out of the user's home.
if "HARNESS_HOME" not in os.environ:
    os.environ["HARNESS_HOME"] = tempfile.mkdtemp(prefix="interchain-harness-")

# Create a profile named "no_deadline" with deadline disabled.
settings.register_profile("no_deadline", deadline=None)
settings.load_profile("no_deadline")
