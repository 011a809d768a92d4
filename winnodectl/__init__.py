"""winnodectl - turns Windows instances into cluster worker nodes."""

__version__ = "0.1.0"
