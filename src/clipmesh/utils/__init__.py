"""Shared utilities for clipmesh."""
