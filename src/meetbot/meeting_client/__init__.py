"""Meeting client automation.

Defines the driver protocol the bot session uses to join a meeting and
capture audio, the Playwright implementation of it, and join-link parsing.
"""
