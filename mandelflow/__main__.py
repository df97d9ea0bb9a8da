import sys

from mandelflow.scene import MandelbrotScene


def main():
    MandelbrotScene().cli(sys.argv[1:])

if __name__ == "__main__":
    main()
