from pyeed.runtime._runtime import *
