"""
Root pytest configuration for WhatIfInvested Edge.

Sets up Python path and test environment variables for all test directories.
"""

import os
import sys
from pathlib import Path

# Set test environment variables before anything else imports settings
os.environ.setdefault("EDGE_LOG_LEVEL", "DEBUG")
os.environ.setdefault("SECRETS_DEFAULT_PROVIDER", "local")
os.environ.setdefault("NETWORK_EGRESS_PUBLIC_IP", "203.0.113.10")

# Project root
project_root = Path(__file__).parent

if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))
