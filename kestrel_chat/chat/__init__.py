"""Conversation reconciliation: converters, merge engine, handlers and runtime"""
