from pyeed.abc.solver import *
