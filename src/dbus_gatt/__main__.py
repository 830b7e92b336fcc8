from .example import main

main()
