import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import relquent
from relquent import (
    classes,
    drivers,
    errors,
    interfaces,
    relations,
    tools,
)
