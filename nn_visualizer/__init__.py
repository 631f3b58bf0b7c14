"""
nn_visualizer package
~~~~~~~~~~~~~~~~~~~~~

Live inference for small dense digit classifiers.
Contains the inference engine, pixel normalization, labelled sample
navigation, descriptor persistence, and API server.
"""

__version__ = "1.0.0"
