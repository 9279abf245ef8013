"""Registry — the source-of-truth model for syncable artifacts.

The registry provides:
- Cataloging: artifacts grouped by category, each versioned and hashed
- Bundles: named, inheritable sets of artifact identifiers
- Projects: consumers of a bundle, with additions, exclusions and protections
- Integrity: structural validation and orphan detection
"""
