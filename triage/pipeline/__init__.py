"""Classification pipeline.

Contract:
- classify / confidence / fingerprint / playbooks / consistency are pure functions of their inputs
- only the engine touches storage
"""
