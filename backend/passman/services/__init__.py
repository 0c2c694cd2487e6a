"""Core services: identity, tokens, two-factor, authorization, sharing and audit."""
