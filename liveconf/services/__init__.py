"""
Liveconf Services

1. Config Service - Local file, cloud poller, merge and publish
2. Settings Service - UI settings channel backed by the local config
3. Auto-Update Service - Periodic self-update through the local proxy
"""

__version__ = "0.1.0"
