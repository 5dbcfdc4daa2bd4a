import os

from trackprep import create_app

app = create_app()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5000"))
    app.run(host="127.0.0.1", port=port, debug=app.config["PIPELINE_CONFIG"].debug, threaded=True)
