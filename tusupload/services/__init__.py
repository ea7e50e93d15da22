"""Transfer, queue, storage and transport services"""
