"""
taglearn — transfer-learning image tagger with online label correction.
"""
