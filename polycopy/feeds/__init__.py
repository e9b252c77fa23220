"""HTTP feeds: Polymarket data API."""
