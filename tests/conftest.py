from pathlib import Path
from dotenv import load_dotenv

# Load test environment before importing anything else
load_dotenv(Path(__file__).parent / ".env", override=True)

from ._conftest.database import *
from ._conftest.app import *
from ._conftest.users import *
from ._conftest.billing import *
