"""
Core modules for studio-finops.

This package contains pricing, the approval gate, the usage ledger,
and the generation pipeline that ties them together.
"""
