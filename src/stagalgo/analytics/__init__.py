"""Pure indicator and portfolio-risk calculations."""
