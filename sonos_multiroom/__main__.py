import uvicorn

from sonos_multiroom.main import API_HOST, API_PORT


def main() -> None:
    uvicorn.run("sonos_multiroom.main:app", host=API_HOST, port=API_PORT, use_colors=False)


if __name__ == "__main__":
    main()
