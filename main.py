"""
Grid Asset Ops - Main Entry Point
Run with: uvicorn main:app --reload --port 8000
"""
from asset_ops.config import HOST, PORT, ensure_data_dirs
from asset_ops.server import create_app

ensure_data_dirs()
app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=HOST, port=PORT)
