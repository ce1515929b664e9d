"""Remote service clients: Google Calendar and Discord."""
