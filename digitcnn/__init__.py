"""
digitcnn package
~~~~~~~~~~~~~~~~

Convolutional network for handwritten digit recognition, written on top
of numpy with hand-derived gradients. Contains the layer and network
implementation, a parallel convolution executor, synthetic digit
generation, the binary model format, the SQLite model registry, the
training controller and the API server.
"""

__version__ = "1.0.0"
