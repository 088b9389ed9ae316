from pyeed.math.linalg import *
from pyeed.math.tensor import *
