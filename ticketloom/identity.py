"""TICKETLOOM identity constants."""

__version__ = "0.4.0"
__codename__ = "TICKETLOOM"
__tagline__ = "One ticket. One worktree. No spinning."

BANNER = r"""
 _____ ___ ___ _  _____ _____ _     ___   ___  __  __
|_   _|_ _/ __| |/ / __|_   _| |   / _ \ / _ \|  \/  |
  | |  | | (__| ' <| _|  | | | |__| (_) | (_) | |\/| |
  |_| |___\___|_|\_\___| |_| |____|\___/ \___/|_|  |_|
"""
