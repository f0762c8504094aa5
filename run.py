import uvicorn
from dotenv import load_dotenv


load_dotenv()
from rebound_relay.app import app


if __name__ == "__main__":
    # Configure uvicorn server
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
