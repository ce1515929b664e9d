"""calboard: mirror a Google Calendar into a Discord channel.

Maintains one continuously edited "board" message listing upcoming events and
posts a notification whenever an event is created, updated or cancelled.
"""

__version__ = "0.1.0"
