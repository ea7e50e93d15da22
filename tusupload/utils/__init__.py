"""Logging, chunking and retry helpers"""
