from milesguard.app import main

main()
