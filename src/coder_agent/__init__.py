"""Resumable coding-task engine served over HTTP."""
