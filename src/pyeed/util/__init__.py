from pyeed.util.array_module import *
from pyeed.util.io import *
from pyeed.util.misc import *
