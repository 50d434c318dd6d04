from hostwright.hostwright import main

main()
