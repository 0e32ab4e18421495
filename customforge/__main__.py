from customforge.app import main

main()
