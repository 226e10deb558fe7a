"""Feature extraction, threat intelligence, scoring models and framework signatures."""
