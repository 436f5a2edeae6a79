import uvicorn

from chatloop.vars import HOST, PORT


def main():
    uvicorn.run("chatloop.server:app", host=HOST, port=PORT)


if __name__ == "__main__":
    main()
