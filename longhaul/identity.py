"""
LONGHAUL identity constants.
"""

__version__ = "0.4.0"
__codename__ = "LONGHAUL"
__tagline__ = "Many sessions. One finish line."

BANNER = r"""
  _    ___  _  _  ___ _  _   _  _   _ _
 | |  / _ \| \| |/ __| || | /_\| | | | |
 | |_| (_) | .` | (_ | __ |/ _ \ |_| | |__
 |____\___/|_|\_|\___|_||_/_/ \_\___/|____|
"""
