"""
Engagement state core for the creative directory.

Tracks a signed-in user's favorites, favorite lists, event RSVPs and article
likes as optimistically updated client state, and gates contact details and
mutations behind the capability set derived from the session.
"""

__version__ = "0.1.0"
