"""
STEWARD Identity

Name, version, and banner shared by the CLI and reports.
"""

__codename__ = "STEWARD"
__version__ = "0.4.0"
__tagline__ = "Apply the suggestion, or leave no trace."

BANNER = r"""
  ___ _____ _____      ___   ___ ___
 / __|_   _| __\ \    / /_\ | _ \   \
 \__ \ | | | _| \ \/\/ / _ \|   / |) |
 |___/ |_| |___| \_/\_/_/ \_\_|_\___/
"""
