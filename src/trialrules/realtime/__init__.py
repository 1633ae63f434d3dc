"""Real-time single-record evaluation: primitives, compiler and rule cache."""
