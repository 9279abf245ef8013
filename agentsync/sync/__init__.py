"""Sync — propagating registry artifacts into consumer projects.

This package provides the primitives for:
- Hashing: short content fingerprints used for every equality test
- Lock store: per-project record of what was last installed
- Planning: classifying each artifact into a sync action
- Settings merge: updating the jointly-owned settings document
- Execution: applying a plan and reporting per-artifact outcomes
"""
