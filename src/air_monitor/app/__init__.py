"""
Application glue around the worker: configuration files, credential
stores, the readings aggregator and the console entry point.
"""
