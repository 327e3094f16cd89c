"""Run the session manager daemon from a source checkout: ``python main.py``."""

from llm_sessions.app import app

if __name__ == "__main__":
    import uvicorn

    from llm_sessions.config import get_server_host, get_server_port

    uvicorn.run(app, host=get_server_host(), port=get_server_port())
