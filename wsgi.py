from dotenv import load_dotenv

load_dotenv()

from marketpay import create_app  # noqa: E402

app = create_app()

if __name__ == "__main__":
    import os

    app.run(host="0.0.0.0", port=int(os.getenv("PORT", 5000)))
