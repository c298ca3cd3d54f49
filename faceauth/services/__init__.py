"""Services: distance engine, feature extractor and the auth session."""
